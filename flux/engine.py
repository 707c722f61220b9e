"""Execution engine: runs a module or a workflow and reports what happened.

Flow per run:
    validate target -> confirm -> run steps in declared order -> finalize report
    (workflows that ran to the end then offer a pending reboot)

Steps run strictly one after another. Errors raised by a module are caught
at the step boundary and recorded on the report; they never escape the
engine.
"""
import dataclasses
import logging
from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence

import typer

from flux.config import ResolvedConfig
from flux.errors import ConfigError, FluxError, ModuleError, NotFound
from flux.registry import Module, ModuleRegistry, WorkflowDescriptor, WorkflowRegistry
from flux.report import ExecutionStep, OutcomeReport, OverallStatus, SkipReason, StepStatus

logger = logging.getLogger(__name__)


class Confirmer(Protocol):
    """Asks the operator a yes/no question."""

    def confirm(self, prompt: str, default: Optional[bool] = None) -> bool:
        ...


class TyperConfirmer:
    """Interactive confirmation on the terminal."""

    def __init__(self, default: bool = True):
        self.default = default

    def confirm(self, prompt: str, default: Optional[bool] = None) -> bool:
        return typer.confirm(prompt, default=self.default if default is None else default)


class AutoConfirmer:
    """Answers every question the same way."""

    def __init__(self, answer: bool = True):
        self.answer = answer
        self.prompts = []

    def confirm(self, prompt: str, default: Optional[bool] = None) -> bool:
        self.prompts.append(prompt)
        return self.answer


StepCallback = Callable[[ExecutionStep], None]


class ExecutionEngine:
    """Drives a single run against frozen registries and a resolved config."""

    def __init__(
        self,
        modules: ModuleRegistry,
        workflows: WorkflowRegistry,
        config: ResolvedConfig,
        confirmer: Optional[Confirmer] = None,
        interactive: Optional[bool] = None,
        on_step: Optional[StepCallback] = None,
        clock: Callable[[], datetime] = datetime.now,
        reboot_check: Optional[Callable[[], bool]] = None,
        reboot: Optional[Callable[[], None]] = None,
    ):
        self.modules = modules
        self.workflows = workflows
        self.config = config
        self.confirmer = confirmer or TyperConfirmer()
        self.interactive = config.general.interactive if interactive is None else interactive
        self.on_step = on_step
        self.clock = clock
        self.reboot_check = reboot_check
        self.reboot = reboot

    def run_module(self, name: str, args: Sequence[str] = ()) -> OutcomeReport:
        """Run one module directly. A failure aborts the run."""
        report = OutcomeReport(name, "module", planned=(name,))
        try:
            module = self.modules.get(name)
        except NotFound as e:
            return self._fail_precheck(report, e)

        logger.info("Running module: %s", name)
        if self.interactive and module.descriptor.requires_root:
            prompt = f"Run module '{name}' ({module.description})?"
            if not self.confirmer.confirm(prompt):
                return self._decline(report)

        step = self._blocked_step(module)
        if step is None:
            step = self._run_step(module, args)
        self._record(report, step)
        if step.status is StepStatus.FAILED:
            return self._finalize(report, OverallStatus.ABORTED)
        return self._finalize(report)

    def run_workflow(self, name: str) -> OutcomeReport:
        """Run every module of a workflow in its declared order."""
        try:
            workflow = self._resolve_workflow(name)
        except NotFound as e:
            return self._fail_precheck(OutcomeReport(name, "workflow"), e)

        report = OutcomeReport(name, "workflow", planned=workflow.module_sequence)
        try:
            steps = [self.modules.get(module_name) for module_name in workflow.module_sequence]
        except NotFound as e:
            return self._fail_precheck(report, e)

        logger.info("Executing workflow: %s", name)
        if self.interactive and not self.confirmer.confirm(self._workflow_prompt(workflow)):
            return self._decline(report)

        for module in steps:
            step = self._blocked_step(module)
            if step is None:
                if self.interactive and workflow.confirm_each:
                    if not self.confirmer.confirm(f"Execute {module.name} module?"):
                        return self._decline(report)
                step = self._run_step(module, ())

            self._record(report, step)
            if step.status is StepStatus.FAILED and workflow.stop_on_error:
                logger.info("Stopping workflow %s after %s failed", name, module.name)
                return self._finalize(report, OverallStatus.ABORTED)

        self._finalize(report)
        self._offer_reboot()
        return report

    def _resolve_workflow(self, name: str) -> WorkflowDescriptor:
        workflow = self.workflows.get(name)
        policy = self.config.workflow_policy(name)
        changes = {}
        if policy.stop_on_error is not None:
            changes["stop_on_error"] = policy.stop_on_error
        if policy.confirm_modules is not None:
            changes["confirm_each"] = policy.confirm_modules
        return dataclasses.replace(workflow, **changes) if changes else workflow

    def _workflow_prompt(self, workflow: WorkflowDescriptor) -> str:
        lines = [f"=== Workflow: {workflow.name} ===", workflow.description, ""]
        lines.append("This workflow will execute the following modules:")
        for index, module_name in enumerate(workflow.module_sequence, 1):
            lines.append(f"  {index}. {module_name}")
        lines.append("")
        lines.append("Continue with workflow execution?")
        return "\n".join(lines)

    def _blocked_step(self, module: Module) -> Optional[ExecutionStep]:
        """Return a finished step when the module cannot run here, else None."""
        started = self.clock()
        try:
            available = module.is_available()
        except ModuleError as e:
            error = e
        except Exception as e:
            logger.exception("Availability check for %s raised an unexpected error", module.name)
            error = ModuleError(f"Availability check failed: {type(e).__name__}: {e}")
            error.__cause__ = e
        else:
            if available:
                return None
            logger.info("Module %s is not available on this system", module.name)
            return self._skipped(module)

        return ExecutionStep(
            module_name=module.name,
            status=StepStatus.FAILED,
            started_at=started,
            ended_at=self.clock(),
            error=error,
        )

    def _offer_reboot(self) -> None:
        if self.reboot_check is None or self.config.general.dry_run:
            return
        if not self.reboot_check():
            logger.debug("No reboot required")
            return

        logger.warning("System reboot is required")
        if not self.interactive or self.reboot is None:
            return
        if not self.confirmer.confirm("Reboot system now?", default=False):
            logger.warning("Remember to reboot later to complete the configuration")
            return
        try:
            self.reboot()
        except FluxError as e:
            logger.error("Reboot failed: %s", e)

    def _skipped(self, module: Module) -> ExecutionStep:
        now = self.clock()
        return ExecutionStep(
            module_name=module.name,
            status=StepStatus.SKIPPED,
            started_at=now,
            ended_at=now,
            skip_reason=SkipReason.UNAVAILABLE,
        )

    def _run_step(self, module: Module, args: Sequence[str]) -> ExecutionStep:
        started = self.clock()
        error: Optional[FluxError] = None
        try:
            config_slice = self.config.slice_for(module.name)
            module.execute(list(args), config_slice)
        except (ConfigError, ModuleError) as e:
            error = e
        except Exception as e:
            logger.exception("Module %s raised an unexpected error", module.name)
            error = ModuleError(f"{type(e).__name__}: {e}")
            error.__cause__ = e

        return ExecutionStep(
            module_name=module.name,
            status=StepStatus.COMPLETED if error is None else StepStatus.FAILED,
            started_at=started,
            ended_at=self.clock(),
            error=error,
        )

    def _record(self, report: OutcomeReport, step: ExecutionStep) -> None:
        report._append(step)
        logger.info(
            "Module %s %s%s",
            step.module_name,
            step.status.value,
            f": {step.error}" if step.error is not None else "",
            extra={"step": step.to_dict()},
        )
        if self.on_step is not None:
            self.on_step(step)

    def _fail_precheck(self, report: OutcomeReport, error: FluxError) -> OutcomeReport:
        logger.error("Cannot start %s '%s': %s", report.kind, report.target, error)
        report._finalize(OverallStatus.ABORTED, fatal_error=error)
        return report

    def _decline(self, report: OutcomeReport) -> OutcomeReport:
        logger.info("%s '%s' cancelled by user", report.kind.capitalize(), report.target)
        report._finalize(OverallStatus.ABORTED, declined=True)
        return report

    def _finalize(
        self, report: OutcomeReport, status: Optional[OverallStatus] = None
    ) -> OutcomeReport:
        if status is None:
            status = OverallStatus.PARTIAL_FAILURE if report.failed else OverallStatus.ALL_COMPLETED
        report._finalize(status)
        logger.info(
            "%s '%s' finished: %s (completed=%d failed=%d skipped=%d)",
            report.kind.capitalize(),
            report.target,
            status.value,
            report.completed,
            report.failed,
            report.skipped,
            extra={"report": report.to_dict()},
        )
        return report
