"""Project-specific framework utilities.

This package contains the glue between the configuration files and the stage
kernel (typed config parsing, shell-backed stages, pipeline files, and the
`Deployment` wiring), but intentionally excludes command-line handling.

Common entrypoints:

- `stack_provisioner.framework.runtime.Deployment`: open the persisted state and wire the engines
- `stack_provisioner.framework.pipeline_file.load_pipeline`: stage definitions from YAML

For reusable, project-agnostic stage primitives, use `stagekit`.
"""
