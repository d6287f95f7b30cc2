"""Rule tables bundled with treefix (YAML data files)."""
