"""Module and workflow registries.

Both registries are filled once at startup, frozen, and then only read.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterator, List, Type

from flux.config import ConfigSlice, ModuleSettings
from flux.errors import (
    DuplicateName,
    InvalidWorkflow,
    NotFound,
    PermissionDenied,
    RegistryFrozen,
    ValidationFailed,
)
from flux.utils import command_exists, current_platforms, is_root

logger = logging.getLogger(__name__)

ALL_PLATFORMS = "all"


@dataclass(frozen=True)
class ModuleDescriptor:
    name: str
    description: str
    version: str = "1.0.0"
    requires_root: bool = True
    supported_platforms: frozenset = field(default=frozenset({ALL_PLATFORMS}))

    def __post_init__(self):
        object.__setattr__(self, "supported_platforms", frozenset(self.supported_platforms))

    def supports(self, platforms: frozenset) -> bool:
        """Check the host's platform tags against the supported set."""
        if ALL_PLATFORMS in self.supported_platforms:
            return True
        return bool(self.supported_platforms & platforms)


class Module(ABC):
    """A unit of host configuration plugged into the engine.

    Subclasses set ``descriptor`` and ``settings_model`` and implement
    ``apply``. Modules that rewrite files are expected to wrap the write in
    ``flux.utils.backed_up`` so a failure leaves the original in place.
    """

    descriptor: ModuleDescriptor
    settings_model: Type[ModuleSettings] = ModuleSettings
    required_commands: tuple = ()
    accepts_args: bool = False

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def description(self) -> str:
        return self.descriptor.description

    @property
    def version(self) -> str:
        return self.descriptor.version

    def is_available(self) -> bool:
        """Platform is supported and every required command is installed."""
        if not self.descriptor.supports(current_platforms()):
            return False
        return all(command_exists(command) for command in self.required_commands)

    def help(self) -> str:
        lines = [f"{self.name} v{self.version} - {self.description}", "", "Settings:"]
        for key, info in self.settings_model.model_fields.items():
            lines.append(f"  {key} (default: {info.get_default(call_default_factory=True)!r})")
        if self.descriptor.requires_root:
            lines.extend(["", "Requires root."])
        return "\n".join(lines)

    def execute(self, args: List[str], config: ConfigSlice) -> None:
        """Run the module; raises ModuleError on failure."""
        if args and not self.accepts_args:
            raise ValidationFailed(f"Module '{self.name}' does not accept arguments: {' '.join(args)}")
        if self.descriptor.requires_root and not config.dry_run and not is_root():
            raise PermissionDenied(f"Module '{self.name}' requires root privileges")
        self.apply(list(args), config)

    @abstractmethod
    def apply(self, args: List[str], config: ConfigSlice) -> None:
        """Bring the host to the configured state."""


@dataclass(frozen=True)
class WorkflowDescriptor:
    name: str
    description: str
    module_sequence: tuple
    stop_on_error: bool = True
    confirm_each: bool = True

    def __post_init__(self):
        object.__setattr__(self, "module_sequence", tuple(self.module_sequence))


class RegistryView:
    """Restartable, registration-ordered view over a registry's descriptors."""

    def __init__(self, registry: "_Registry"):
        self._registry = registry

    def __iter__(self) -> Iterator:
        for entry in list(self._registry._entries.values()):
            yield self._registry._describe(entry)

    def __len__(self) -> int:
        return len(self._registry._entries)


class _Registry:
    kind = "entry"

    def __init__(self):
        self._entries = {}
        self._frozen = False

    def _add(self, name: str, entry) -> None:
        if self._frozen:
            raise RegistryFrozen(f"Cannot register {self.kind} '{name}': registry is frozen")
        if name in self._entries:
            raise DuplicateName(self.kind, name)
        self._entries[name] = entry
        logger.debug("Registered %s '%s'", self.kind, name)

    def _describe(self, entry):
        return entry

    def freeze(self):
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str):
        try:
            return self._entries[name]
        except KeyError:
            raise NotFound(self.kind, name) from None

    def list(self) -> RegistryView:
        return RegistryView(self)

    def names(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ModuleRegistry(_Registry):
    kind = "module"

    def register(self, module: Module) -> None:
        self._add(module.descriptor.name, module)

    def _describe(self, entry: Module) -> ModuleDescriptor:
        return entry.descriptor

    def schemas(self) -> dict:
        """Settings model per module, for the config resolver."""
        return {name: module.settings_model for name, module in self._entries.items()}


class WorkflowRegistry(_Registry):
    kind = "workflow"

    def register(self, workflow: WorkflowDescriptor) -> None:
        if not workflow.module_sequence:
            raise InvalidWorkflow(f"Workflow '{workflow.name}' has no modules")
        seen = set()
        for name in workflow.module_sequence:
            if name in seen:
                raise InvalidWorkflow(f"Workflow '{workflow.name}' lists '{name}' more than once")
            seen.add(name)
        self._add(workflow.name, workflow)
