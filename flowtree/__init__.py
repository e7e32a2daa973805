# flowtree package
# Turns exported flowcharts into executable agent workflows.
#
# Subpackages:
#   - document: flowchart export parsing and serialization (CSV / JSON)
#   - config: agent registry and layered settings
#   - runtime: node configuration, prompts, response parsing, execution engine
#   - tools: command-line entry points

__version__ = "0.3.0"
