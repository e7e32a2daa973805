# flowtree/config package
# Agent registry (agents.yaml) and layered process-wide settings (settings.yaml).
