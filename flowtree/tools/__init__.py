# flowtree/tools package
# Command-line entry points (see flowtree_cli.py).
