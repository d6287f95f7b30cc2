from __future__ import annotations

import os
import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def run_git(root: Path, *cmd: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *cmd],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )


def init_repo(root: Path) -> None:
    root.mkdir(parents=True, exist_ok=True)
    run_git(root, "init")
    run_git(root, "config", "user.email", "treefix@example.com")
    run_git(root, "config", "user.name", "treefix")


def commit_all(root: Path, message: str) -> None:
    run_git(root, "add", ".")
    run_git(root, "commit", "-m", message)


def write(root: Path, relative: str, content: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


FOO_C = textwrap.dedent(
    """\
    #include <linux/kernel.h>

    int bar(void) {
    \treturn 0;
    }
    """
)

DRIVERS_MAKEFILE = "obj-y += base/\nobj-y += char/\n"

DRIVERS_KCONFIG = textwrap.dedent(
    """\
    menu "Device Drivers"

    source "drivers/base/Kconfig"

    endmenu
    """
)

KSU_KBUILD = textwrap.dedent(
    """\
    obj-$(CONFIG_KSU) += kernelsu.o

    KSU_VERSION_FALLBACK := 1
    KSU_VERSION_TAG_FALLBACK := v0.0.1
    """
)

# ``git apply`` needs exact bytes; textwrap.dedent would strip the lone-space
# context lines.
PRIMARY_PATCH = "\n".join(
    [
        "diff --git a/fs/susfs.c b/fs/susfs.c",
        "new file mode 100644",
        "--- /dev/null",
        "+++ b/fs/susfs.c",
        "@@ -0,0 +1,2 @@",
        "+#include <linux/kernel.h>",
        "+int susfs_init(void) { return 0; }",
        "diff --git a/fs/foo.c b/fs/foo.c",
        "--- a/fs/foo.c",
        "+++ b/fs/foo.c",
        "@@ -1,3 +1,4 @@",
        " #include <linux/kernel.h>",
        "+#include <linux/susfs_def.h>",
        " ",
        " static int vendor_backport(void) {",
        "",
    ]
)

REMEDIATION_TABLE = textwrap.dedent(
    """\
    name: fixture-remediation
    rules:
      - id: foo-susfs-include
        target_file: fs/foo.c
        precondition_marker: "#include <linux/susfs_def.h>"
        anchor: "#include <linux/kernel.h>"
        transformation:
          kind: insert_after
          text: "#include <linux/susfs_def.h>"
        verification_marker: "#include <linux/susfs_def.h>"
    """
)

INSTRUMENTATION_TABLE = textwrap.dedent(
    """\
    name: fixture-hooks
    rules:
      - id: bar-hook-declaration
        target_file: fs/foo.c
        precondition_marker: "extern void ksu_handle_bar(void);"
        anchor: "int bar(void) {"
        transformation:
          kind: insert_before
          text: "extern void ksu_handle_bar(void);\\n"
        verification_marker: "extern void ksu_handle_bar(void);"
      - id: bar-hook
        target_file: fs/foo.c
        precondition_marker: "ksu_handle_bar();"
        call_site:
          function: "int bar(void) {"
          anchor: "return 0;"
          position: before
        build_condition: CONFIG_KSU
        body: "ksu_handle_bar();"
        verification_marker: "ksu_handle_bar();"
    """
)


@dataclass(slots=True)
class SourceTree:
    """Git-backed miniature source tree plus the config that drives it."""

    root: Path
    component: Path
    config_path: Path

    def run_cli(self, *args: str) -> subprocess.CompletedProcess[str]:
        """Invoke ``python -m treefix.cli`` with the provided arguments."""

        env = os.environ.copy()
        pythonpath = str(SRC)
        if env.get("PYTHONPATH"):
            pythonpath = os.pathsep.join([pythonpath, env["PYTHONPATH"]])
        env["PYTHONPATH"] = pythonpath

        command = [sys.executable, "-m", "treefix.cli", *args]
        return subprocess.run(  # noqa: S603 - command constructed from known values
            command,
            cwd=self.config_path.parent,
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text(encoding="utf-8")


@pytest.fixture()
def source_tree(tmp_path: Path) -> SourceTree:
    """Create a tiny kernel-like tree, a driver repo and a treefix config."""

    tree = tmp_path / "tree"
    init_repo(tree)
    write(tree, "fs/foo.c", FOO_C)
    write(tree, "drivers/Makefile", DRIVERS_MAKEFILE)
    write(tree, "drivers/Kconfig", DRIVERS_KCONFIG)
    write(tree, "drivers/kernelsu/Kconfig", 'config KSU\n\tbool "KernelSU"\n')
    write(tree, "drivers/kernelsu/Kbuild", KSU_KBUILD)
    commit_all(tree, "Baseline")

    component = tmp_path / "driver"
    init_repo(component)
    for index in range(3):
        write(component, "kernel/ksu.c", f"/* revision {index} */\n")
        commit_all(component, f"Driver revision {index}")

    work = tmp_path / "work"
    write(work, "patches/primary.patch", PRIMARY_PATCH)
    write(work, "rules/remediation.yaml", REMEDIATION_TABLE)
    write(work, "rules/hooks.yaml", INSTRUMENTATION_TABLE)
    config_path = write(
        work,
        "treefix.yaml",
        textwrap.dedent(
            f"""\
            tree:
              root: {tree.as_posix()}
            patch:
              path: patches/primary.patch
              must_exist:
                - fs/susfs.c
            baseline:
              groups:
                patch:
                  - fs/foo.c
                instrumentation:
                  - fs/foo.c
                build_rewrite:
                  - drivers/Makefile
                  - drivers/Kconfig
              generated:
                - fs/susfs.c
            rules:
              remediation:
                - rules/remediation.yaml
              instrumentation:
                - rules/hooks.yaml
              registration:
                - ksu-registration
            installation:
              required:
                - drivers/kernelsu/Kconfig
                - drivers/kernelsu/Kbuild
            component:
              path: {component.as_posix()}
              kbuild: drivers/kernelsu/Kbuild
            version:
              output: out/ksu_version.txt
            paths:
              logs: logs
            """
        ),
    )
    return SourceTree(root=tree, component=component, config_path=config_path)
