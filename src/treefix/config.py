"""Configuration file handling for treefix pipelines."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml

from .version import VersionSettings

DEFAULT_CONFIG_NAME = "treefix.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "tree": {
        "root": ".",
    },
    "patch": {
        "path": "patches/50_add_susfs_in_gki-android-4.19.patch",
        "must_exist": [
            "fs/susfs.c",
            "include/linux/susfs.h",
            "include/linux/susfs_def.h",
        ],
    },
    "baseline": {
        "groups": {
            "build_rewrite": [
                "fs/namespace.c",
                "fs/internal.h",
                "include/linux/seccomp.h",
                "security/selinux/hooks.c",
                "security/selinux/include/objsec.h",
                "security/selinux/selinuxfs.c",
                "security/selinux/xfrm.c",
            ],
            "patch": [
                "fs/Makefile",
                "fs/namei.c",
                "fs/namespace.c",
                "fs/notify/fdinfo.c",
                "fs/proc/base.c",
                "fs/proc/cmdline.c",
                "fs/proc/fd.c",
                "fs/proc/task_mmu.c",
                "fs/proc_namespace.c",
                "fs/readdir.c",
                "fs/seq_file.c",
                "fs/stat.c",
                "fs/statfs.c",
                "include/linux/mount.h",
                "include/linux/sched.h",
                "include/linux/seq_file.h",
                "kernel/kallsyms.c",
                "kernel/sys.c",
                "security/selinux/avc.c",
            ],
            "instrumentation": [
                "fs/exec.c",
                "fs/open.c",
                "fs/read_write.c",
                "fs/stat.c",
                "drivers/input/input.c",
                "fs/devpts/inode.c",
                "kernel/reboot.c",
            ],
            "registration": [
                "drivers/Makefile",
                "drivers/Kconfig",
            ],
        },
        "generated": [
            "fs/susfs.c",
            "include/linux/susfs.h",
            "include/linux/susfs_def.h",
        ],
    },
    "rules": {
        "remediation": ["susfs-remediation"],
        "instrumentation": ["ksu-hooks"],
        "registration": ["ksu-registration"],
    },
    "installation": {
        "required": [
            "drivers/kernelsu/Kconfig",
            "drivers/kernelsu/Kbuild",
        ],
    },
    "component": {
        "path": "drivers/kernelsu",
        "kbuild": "drivers/kernelsu/Kbuild",
    },
    "version": {
        "base_offset": 30000,
        "increment": 60,
        "numeric_prefix": "1.0-build-",
        "tag_prefix": "v1.0-susfs-",
        "fallback": "1.0-unknown",
        "output": "ksu_version.txt",
        "inject_kbuild": True,
    },
    "paths": {
        "logs": "logs",
    },
}


class ConfigError(ValueError):
    """Raised when the configuration file is missing or malformed."""


def copy_config_template() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return value


def _string_list(value: Any, label: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"'{label}' must be a list of strings")
    return [str(item) for item in value]


def _resolve(base: Path, value: Any, *, follow_links: bool = True) -> Path:
    path = Path(str(value)).expanduser()
    if not path.is_absolute():
        path = base / path
    if follow_links:
        return path.resolve()
    return Path(os.path.normpath(path))


@dataclass(slots=True)
class PipelineSettings:
    """Typed view over ``treefix.yaml`` with paths resolved."""

    config_dir: Path
    tree_root: Path
    patch_path: Path | None = None
    must_exist: List[str] = field(default_factory=list)
    baseline_groups: Dict[str, List[str]] = field(default_factory=dict)
    generated: List[str] = field(default_factory=list)
    remediation_tables: List[str] = field(default_factory=list)
    instrumentation_tables: List[str] = field(default_factory=list)
    registration_tables: List[str] = field(default_factory=list)
    required_paths: List[str] = field(default_factory=list)
    component_path: Path | None = None
    kbuild_path: Path | None = None
    version: VersionSettings = field(default_factory=VersionSettings)
    version_output: Path | None = None
    inject_kbuild: bool = True
    logs_dir: Path | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, config_path: Path | None = None) -> "PipelineSettings":
        base = config_path.parent.resolve() if config_path is not None else Path.cwd()

        tree_root = _resolve(base, _section(config, "tree").get("root", "."))

        patch_cfg = _section(config, "patch")
        patch_value = patch_cfg.get("path")
        patch_path = _resolve(base, patch_value) if patch_value else None

        baseline_cfg = _section(config, "baseline")
        groups_cfg = baseline_cfg.get("groups") or {}
        if not isinstance(groups_cfg, Mapping):
            raise ConfigError("'baseline.groups' must map group names to path lists")
        groups = {str(name): _string_list(paths, f"baseline.groups.{name}") for name, paths in groups_cfg.items()}

        rules_cfg = _section(config, "rules")
        component_cfg = _section(config, "component")
        component_value = component_cfg.get("path")
        kbuild_value = component_cfg.get("kbuild")

        version_cfg = _section(config, "version")
        defaults = VersionSettings()
        try:
            version = VersionSettings(
                base_offset=int(version_cfg.get("base_offset", defaults.base_offset)),
                increment=int(version_cfg.get("increment", defaults.increment)),
                numeric_prefix=str(version_cfg.get("numeric_prefix", defaults.numeric_prefix)),
                tag_prefix=str(version_cfg.get("tag_prefix", defaults.tag_prefix)),
                fallback=str(version_cfg.get("fallback", defaults.fallback)),
            )
        except (TypeError, ValueError) as error:
            raise ConfigError(f"Invalid version settings: {error}") from error
        output_value = version_cfg.get("output")

        logs_value = _section(config, "paths").get("logs") or "logs"

        return cls(
            config_dir=base,
            tree_root=tree_root,
            patch_path=patch_path,
            must_exist=_string_list(patch_cfg.get("must_exist"), "patch.must_exist"),
            baseline_groups=groups,
            generated=_string_list(baseline_cfg.get("generated"), "baseline.generated"),
            remediation_tables=_string_list(rules_cfg.get("remediation"), "rules.remediation"),
            instrumentation_tables=_string_list(rules_cfg.get("instrumentation"), "rules.instrumentation"),
            registration_tables=_string_list(rules_cfg.get("registration"), "rules.registration"),
            required_paths=_string_list(_section(config, "installation").get("required"), "installation.required"),
            component_path=_resolve(tree_root, component_value, follow_links=False) if component_value else None,
            kbuild_path=_resolve(tree_root, kbuild_value) if kbuild_value else None,
            version=version,
            version_output=_resolve(base, output_value) if output_value else None,
            inject_kbuild=bool(version_cfg.get("inject_kbuild", True)),
            logs_dir=_resolve(base, logs_value),
        )

    @classmethod
    def load(cls, config_path: Path) -> "PipelineSettings":
        return cls.from_config(load_config(config_path), config_path=config_path)


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "PipelineSettings",
    "copy_config_template",
    "load_config",
    "write_config",
]
