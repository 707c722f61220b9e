"""Error taxonomy for the provisioning engine."""


class FluxError(Exception):
    """Base class for all flux errors."""


class NotFound(FluxError):
    """A module or workflow name is unknown to its registry."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind.capitalize()} '{name}' not found")


class DuplicateName(FluxError):
    """A name was registered twice."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind.capitalize()} '{name}' is already registered")


class RegistryFrozen(FluxError):
    """Registration was attempted after the registry was frozen."""


class InvalidWorkflow(FluxError):
    """A workflow descriptor failed registration-time validation."""


class ConfigError(FluxError):
    """A configuration file or value could not be resolved."""

    def __init__(self, message: str, module: str = ""):
        self.module = module
        super().__init__(message)


class ModuleError(FluxError):
    """A module's execute operation failed."""

    kind = "module error"


class PermissionDenied(ModuleError):
    kind = "permission denied"


class CommandFailed(ModuleError):
    kind = "command failed"

    def __init__(self, message: str, command: str = "", exit_code: int = 0):
        self.command = command
        self.exit_code = exit_code
        super().__init__(message)


class ValidationFailed(ModuleError):
    kind = "validation failed"


class ReportFinalized(FluxError):
    """A finalized outcome report was written to."""
