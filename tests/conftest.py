"""Shared fakes for engine and CLI tests."""
import logging
from datetime import datetime

import pytest
from pydantic import Field

from flux.config import ConfigResolver, ModuleSettings
from flux.engine import AutoConfirmer, ExecutionEngine
from flux.registry import Module, ModuleDescriptor, ModuleRegistry, WorkflowDescriptor, WorkflowRegistry


class PortSettings(ModuleSettings):
    port: int = Field(default=22, ge=1, le=65535)
    label: str = "default"
    tags: list = Field(default_factory=list)


class FakeModule(Module):
    """Module that records its calls instead of touching the host."""

    settings_model = PortSettings
    accepts_args = True

    def __init__(self, name, available=True, error=None, requires_root=False, journal=None):
        self.descriptor = ModuleDescriptor(
            name=name, description=f"{name} module", requires_root=requires_root
        )
        self.available = available
        self.error = error
        self.journal = journal if journal is not None else []
        self.started_at = None
        self.received = []

    def is_available(self):
        if isinstance(self.available, Exception):
            raise self.available
        return self.available

    def apply(self, args, config):
        self.started_at = datetime.now()
        self.journal.append(self.name)
        self.received.append((args, config))
        if self.error is not None:
            raise self.error


class ScriptedConfirmer:
    """Answers prompts from a fixed list."""

    def __init__(self, answers):
        self.answers = list(answers)
        self.prompts = []

    def confirm(self, prompt, default=None):
        self.prompts.append(prompt)
        return self.answers.pop(0)


def make_registries(modules, workflows=()):
    registry = ModuleRegistry()
    for module in modules:
        registry.register(module)
    workflow_registry = WorkflowRegistry()
    for workflow in workflows:
        workflow_registry.register(workflow)
    return registry.freeze(), workflow_registry.freeze()


def workflow(name, sequence, stop_on_error=True, confirm_each=False):
    return WorkflowDescriptor(
        name=name,
        description=f"{name} workflow",
        module_sequence=sequence,
        stop_on_error=stop_on_error,
        confirm_each=confirm_each,
    )


@pytest.fixture(autouse=True)
def reset_flux_logging():
    """Drop handlers that setup_logging attached during a test."""
    yield
    logger = logging.getLogger("flux")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


@pytest.fixture
def journal():
    return []


@pytest.fixture
def make_engine():
    """Build an engine over fake modules; non-interactive unless asked."""

    def _make(modules, workflows=(), confirmer=None, interactive=False, file_data=None, env=None, on_step=None,
              reboot_check=None, reboot=None):
        registry, workflow_registry = make_registries(modules, workflows)
        config = ConfigResolver(registry.schemas()).resolve(file_data=file_data, env=env)
        return ExecutionEngine(
            registry,
            workflow_registry,
            config,
            confirmer=confirmer or AutoConfirmer(True),
            interactive=interactive,
            on_step=on_step,
            reboot_check=reboot_check,
            reboot=reboot,
        )

    return _make
