"""TAS Workflow Builder.

Define multi-step workflows in YAML, store them per space, and execute them
either in-process or on Argo Workflows.
"""

__version__ = "0.1.0"

from tas_workflow_builder.config import WorkflowBuilderSettings

__all__ = ["__version__", "WorkflowBuilderSettings"]
