"""Workflow catalog.

Modules run in exactly the order listed; a module that depends on another
must come after it.
"""
from flux.registry import WorkflowDescriptor, WorkflowRegistry

WORKFLOWS = (
    WorkflowDescriptor(
        name="essential",
        description="Basic system setup: updates, certificates, kernel hardening and SSH",
        module_sequence=("update", "certs", "sysctl", "ssh"),
        stop_on_error=True,
        confirm_each=True,
    ),
    WorkflowDescriptor(
        name="security",
        description="Security hardening: SSH, firewall, sysctl and certificates",
        module_sequence=("update", "ssh", "firewall", "sysctl", "certs"),
        stop_on_error=True,
        confirm_each=True,
    ),
    WorkflowDescriptor(
        name="complete",
        description="Full system provisioning (essential + extras)",
        module_sequence=(
            "update", "hostname", "timezone", "user", "ssh", "firewall",
            "sysctl", "certs", "zsh", "motd", "netdata",
        ),
        stop_on_error=False,
        confirm_each=True,
    ),
    WorkflowDescriptor(
        name="development",
        description="Development environment: packages, admin user and Zsh",
        module_sequence=("update", "user", "zsh"),
        stop_on_error=False,
        confirm_each=False,
    ),
    WorkflowDescriptor(
        name="monitoring",
        description="Netdata monitoring with certificates and firewall",
        module_sequence=("update", "netdata", "certs", "firewall"),
        stop_on_error=True,
        confirm_each=True,
    ),
)


def build_workflow_registry() -> WorkflowRegistry:
    """Register the workflow catalog and freeze the registry."""
    registry = WorkflowRegistry()
    for workflow in WORKFLOWS:
        registry.register(workflow)
    return registry.freeze()
