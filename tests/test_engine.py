"""Tests for the execution engine."""
import logging

import pytest

from conftest import FakeModule, ScriptedConfirmer, workflow
from flux.config import ConfigSlice
from flux.engine import AutoConfirmer
from flux.errors import ConfigError, ModuleError, NotFound, ReportFinalized
from flux.report import OverallStatus, SkipReason, StepStatus


def statuses(report):
    return [(step.module_name, step.status) for step in report.steps]


class TestWorkflowOrdering:
    """Tests for sequential execution order."""

    def test_modules_run_in_declared_order(self, make_engine, journal):
        """Test modules start in sequence order with non-decreasing times."""
        mods = [FakeModule(name, journal=journal) for name in ("a", "b", "c")]
        engine = make_engine(mods, [workflow("abc", ["a", "b", "c"])])

        report = engine.run_workflow("abc")

        assert journal == ["a", "b", "c"]
        assert [s.module_name for s in report.steps] == ["a", "b", "c"]
        assert mods[0].started_at <= mods[1].started_at <= mods[2].started_at
        assert report.overall_status is OverallStatus.ALL_COMPLETED

    def test_declared_order_wins_over_registration_order(self, make_engine, journal):
        """Test that the workflow sequence, not the registry, decides order."""
        mods = [FakeModule(name, journal=journal) for name in ("c", "b", "a")]
        engine = make_engine(mods, [workflow("abc", ["a", "b", "c"])])

        engine.run_workflow("abc")

        assert journal == ["a", "b", "c"]

    def test_step_timestamps_are_ordered(self, make_engine):
        """Test each step ends before the next one starts."""
        mods = [FakeModule(name) for name in ("a", "b", "c")]
        report = make_engine(mods, [workflow("abc", ["a", "b", "c"])]).run_workflow("abc")

        steps = report.steps
        for earlier, later in zip(steps, steps[1:]):
            assert earlier.ended_at <= later.started_at


class TestFailureHandling:
    """Tests for stop_on_error semantics."""

    def _four_steps(self, journal, stop_on_error):
        mods = [
            FakeModule("s1", journal=journal),
            FakeModule("s2", journal=journal, error=ModuleError("boom")),
            FakeModule("s3", journal=journal),
            FakeModule("s4", journal=journal),
        ]
        return mods, workflow("four", ["s1", "s2", "s3", "s4"], stop_on_error=stop_on_error)

    def test_stop_on_error_aborts_and_omits_remaining_steps(self, make_engine, journal):
        """Test steps after a failure are absent, not skipped."""
        mods, wf = self._four_steps(journal, stop_on_error=True)

        report = make_engine(mods, [wf]).run_workflow("four")

        assert statuses(report) == [("s1", StepStatus.COMPLETED), ("s2", StepStatus.FAILED)]
        assert report.overall_status is OverallStatus.ABORTED
        assert journal == ["s1", "s2"]
        assert report.not_attempted == ("s3", "s4")

    def test_continue_on_error_runs_remaining_steps(self, make_engine, journal):
        """Test remaining steps still run when stop_on_error is false."""
        mods, wf = self._four_steps(journal, stop_on_error=False)

        report = make_engine(mods, [wf]).run_workflow("four")

        assert statuses(report) == [
            ("s1", StepStatus.COMPLETED),
            ("s2", StepStatus.FAILED),
            ("s3", StepStatus.COMPLETED),
            ("s4", StepStatus.COMPLETED),
        ]
        assert report.overall_status is OverallStatus.PARTIAL_FAILURE
        assert report.not_attempted == ()

    def test_failure_keeps_module_error(self, make_engine):
        """Test the step carries the module's error unchanged."""
        error = ModuleError("port in use")
        report = make_engine([FakeModule("ssh", error=error)]).run_module("ssh")

        assert report.steps[0].error is error
        assert "ssh: port in use" in "\n".join(report.summary_lines())

    def test_unexpected_exception_is_recorded_as_failure(self, make_engine):
        """Test non-flux exceptions do not escape the engine."""
        report = make_engine([FakeModule("bad", error=RuntimeError("kaboom"))]).run_module("bad")

        step = report.steps[0]
        assert step.status is StepStatus.FAILED
        assert isinstance(step.error, ModuleError)
        assert "kaboom" in str(step.error)
        assert report.overall_status is OverallStatus.ABORTED

    def test_single_module_failure_aborts(self, make_engine):
        """Test a failed direct module run is classified as aborted."""
        report = make_engine([FakeModule("x", error=ModuleError("nope"))]).run_module("x")

        assert report.overall_status is OverallStatus.ABORTED
        assert report.failed == 1

    def test_config_error_fails_only_that_step(self, make_engine, journal):
        """Test an invalid setting fails its own step and the run continues."""
        mods = [FakeModule("a", journal=journal), FakeModule("b", journal=journal)]
        wf = workflow("ab", ["a", "b"], stop_on_error=False)
        file_data = {"modules": {"a": {"port": 70000}}}

        report = make_engine(mods, [wf], file_data=file_data).run_workflow("ab")

        assert statuses(report) == [("a", StepStatus.FAILED), ("b", StepStatus.COMPLETED)]
        assert isinstance(report.steps[0].error, ConfigError)
        assert journal == ["b"]
        assert report.overall_status is OverallStatus.PARTIAL_FAILURE

    def test_availability_check_error_fails_that_step(self, make_engine, journal):
        """Test a raising availability check fails its step and the run goes on."""
        mods = [
            FakeModule("a", journal=journal),
            FakeModule("b", available=RuntimeError("lsb_release missing"), journal=journal),
            FakeModule("c", journal=journal),
        ]
        wf = workflow("abc", ["a", "b", "c"], stop_on_error=False)

        report = make_engine(mods, [wf]).run_workflow("abc")

        assert statuses(report) == [
            ("a", StepStatus.COMPLETED),
            ("b", StepStatus.FAILED),
            ("c", StepStatus.COMPLETED),
        ]
        assert journal == ["a", "c"]
        error = report.steps[1].error
        assert isinstance(error, ModuleError)
        assert isinstance(error.__cause__, RuntimeError)
        assert "lsb_release missing" in str(error)
        assert report.overall_status is OverallStatus.PARTIAL_FAILURE

    def test_availability_check_error_honours_stop_on_error(self, make_engine, journal):
        """Test a raising availability check aborts a stop-on-error workflow."""
        mods = [
            FakeModule("a", available=RuntimeError("dpkg query failed"), journal=journal),
            FakeModule("b", journal=journal),
        ]

        report = make_engine(mods, [workflow("ab", ["a", "b"])]).run_workflow("ab")

        assert report.overall_status is OverallStatus.ABORTED
        assert report.not_attempted == ("b",)
        assert journal == []

    def test_availability_check_error_on_single_module(self, make_engine):
        """Test a direct run of a module whose availability check raises."""
        report = make_engine([FakeModule("a", available=ModuleError("no os-release"))]).run_module("a")

        assert report.finalized
        assert report.steps[0].status is StepStatus.FAILED
        assert str(report.steps[0].error) == "no os-release"
        assert report.overall_status is OverallStatus.ABORTED


class TestEssentialScenarios:
    """Tests for the essential workflow scenarios."""

    names = ["update", "certs", "sysctl", "ssh"]

    def test_unavailable_module_is_skipped(self, make_engine):
        """Test an unavailable step is skipped and does not block completion."""
        mods = [FakeModule(n, available=(n != "certs")) for n in self.names]
        wf = workflow("essential", self.names, stop_on_error=True)

        report = make_engine(mods, [wf]).run_workflow("essential")

        assert statuses(report) == [
            ("update", StepStatus.COMPLETED),
            ("certs", StepStatus.SKIPPED),
            ("sysctl", StepStatus.COMPLETED),
            ("ssh", StepStatus.COMPLETED),
        ]
        assert report.steps[1].skip_reason is SkipReason.UNAVAILABLE
        assert report.overall_status is OverallStatus.ALL_COMPLETED

    @pytest.mark.parametrize("stop_on_error,expected", [
        (True, OverallStatus.ABORTED),
        (False, OverallStatus.PARTIAL_FAILURE),
    ])
    def test_last_step_failure(self, make_engine, stop_on_error, expected):
        """Test a failing last step under both error policies."""
        mods = [
            FakeModule(n, error=ModuleError("port in use") if n == "ssh" else None)
            for n in self.names
        ]
        wf = workflow("essential", self.names, stop_on_error=stop_on_error)

        report = make_engine(mods, [wf]).run_workflow("essential")

        assert [s.status for s in report.steps] == [
            StepStatus.COMPLETED, StepStatus.COMPLETED, StepStatus.COMPLETED, StepStatus.FAILED,
        ]
        assert report.overall_status is expected


class TestPreChecks:
    """Tests for validation before any step runs."""

    def test_unknown_module(self, make_engine):
        """Test an unknown module yields NotFound with zero steps."""
        report = make_engine([FakeModule("a")]).run_module("missing")

        assert isinstance(report.fatal_error, NotFound)
        assert report.steps == ()
        assert report.overall_status is OverallStatus.ABORTED

    def test_unknown_workflow(self, make_engine):
        """Test an unknown workflow yields NotFound with zero steps."""
        report = make_engine([FakeModule("a")]).run_workflow("missing")

        assert isinstance(report.fatal_error, NotFound)
        assert report.steps == ()

    def test_workflow_with_unknown_module_fails_fast(self, make_engine, journal):
        """Test no step runs when any workflow module is missing."""
        mods = [FakeModule("a", journal=journal)]
        report = make_engine(mods, [workflow("broken", ["a", "ghost"])]).run_workflow("broken")

        assert isinstance(report.fatal_error, NotFound)
        assert report.fatal_error.name == "ghost"
        assert journal == []
        assert report.steps == ()
        assert report.overall_status is OverallStatus.ABORTED


class TestConfirmation:
    """Tests for interactive confirmation."""

    def test_decline_before_start(self, make_engine, journal):
        """Test a declined workflow runs nothing and is not a failure."""
        mods = [FakeModule("a", journal=journal), FakeModule("b", journal=journal)]
        confirmer = AutoConfirmer(False)
        engine = make_engine(mods, [workflow("ab", ["a", "b"])], confirmer=confirmer, interactive=True)

        report = engine.run_workflow("ab")

        assert report.steps == ()
        assert report.overall_status is OverallStatus.ABORTED
        assert report.declined is True
        assert report.fatal_error is None
        assert journal == []
        assert "No changes were made." in report.summary_lines()
        assert "1. a" in confirmer.prompts[0]

    def test_decline_is_not_logged_as_error(self, make_engine, caplog):
        """Test a cancellation is logged below error level."""
        caplog.set_level(logging.DEBUG, logger="flux")
        engine = make_engine([FakeModule("a")], [workflow("a", ["a"])], confirmer=AutoConfirmer(False), interactive=True)

        engine.run_workflow("a")

        assert "cancelled by user" in caplog.text
        assert all(record.levelno < logging.ERROR for record in caplog.records)

    def test_decline_at_step_halts_after_last_confirmed(self, make_engine, journal):
        """Test a per-step decline stops the run without running that step."""
        mods = [FakeModule(n, journal=journal) for n in ("a", "b", "c")]
        wf = workflow("abc", ["a", "b", "c"], confirm_each=True)
        confirmer = ScriptedConfirmer([True, True, False])

        report = make_engine(mods, [wf], confirmer=confirmer, interactive=True).run_workflow("abc")

        assert journal == ["a"]
        assert statuses(report) == [("a", StepStatus.COMPLETED)]
        assert report.overall_status is OverallStatus.ABORTED
        assert report.declined is True
        assert report.changes_made is True
        assert "No changes were made." not in report.summary_lines()

    def test_no_step_prompts_without_confirm_each(self, make_engine):
        """Test only the workflow-level prompt is shown when confirm_each is off."""
        confirmer = AutoConfirmer(True)
        mods = [FakeModule("a"), FakeModule("b")]
        engine = make_engine(mods, [workflow("ab", ["a", "b"])], confirmer=confirmer, interactive=True)

        engine.run_workflow("ab")

        assert len(confirmer.prompts) == 1

    def test_non_interactive_never_prompts(self, make_engine):
        """Test auto mode never consults the confirmer."""
        confirmer = AutoConfirmer(False)
        wf = workflow("ab", ["a", "b"], confirm_each=True)
        engine = make_engine([FakeModule("a"), FakeModule("b")], [wf], confirmer=confirmer)

        report = engine.run_workflow("ab")

        assert confirmer.prompts == []
        assert report.overall_status is OverallStatus.ALL_COMPLETED

    def test_root_module_asks_before_running(self, make_engine, journal):
        """Test a root-level module run is confirmed in interactive mode."""
        confirmer = AutoConfirmer(False)
        mods = [FakeModule("ssh", requires_root=True, journal=journal)]

        report = make_engine(mods, confirmer=confirmer, interactive=True).run_module("ssh")

        assert confirmer.prompts
        assert report.declined is True
        assert journal == []

    def test_user_module_runs_without_prompt(self, make_engine):
        """Test a module not needing root runs without confirmation."""
        confirmer = AutoConfirmer(False)
        report = make_engine([FakeModule("zsh")], confirmer=confirmer, interactive=True).run_module("zsh")

        assert confirmer.prompts == []
        assert report.overall_status is OverallStatus.ALL_COMPLETED


class TestConfigHandling:
    """Tests for the configuration handed to modules."""

    def test_modules_receive_their_slice(self, make_engine):
        """Test each module gets its own resolved settings."""
        mod = FakeModule("a")
        engine = make_engine([mod], file_data={"modules": {"a": {"port": 2222}}})

        engine.run_module("a", ["--menu"])

        args, config = mod.received[0]
        assert args == ["--menu"]
        assert isinstance(config, ConfigSlice)
        assert config.settings.port == 2222
        assert config.settings is engine.config["a"]

    def test_config_shared_across_steps(self, make_engine):
        """Test every step sees the same general settings object."""
        mods = [FakeModule("a"), FakeModule("b")]
        engine = make_engine(mods, [workflow("ab", ["a", "b"])])

        engine.run_workflow("ab")

        assert mods[0].received[0][1].general is mods[1].received[0][1].general

    def test_workflow_policy_from_config_file(self, make_engine, journal):
        """Test [workflows.<name>] can relax stop_on_error."""
        mods = [FakeModule("a", error=ModuleError("x"), journal=journal), FakeModule("b", journal=journal)]
        file_data = {"workflows": {"ab": {"stop_on_error": False}}}

        report = make_engine(mods, [workflow("ab", ["a", "b"])], file_data=file_data).run_workflow("ab")

        assert journal == ["a", "b"]
        assert report.overall_status is OverallStatus.PARTIAL_FAILURE

    def test_repeated_runs_classify_the_same(self, make_engine):
        """Test running a module twice gives the same outcome classification."""
        engine = make_engine([FakeModule("a")])

        first = engine.run_module("a")
        second = engine.run_module("a")

        assert first.overall_status is second.overall_status is OverallStatus.ALL_COMPLETED
        assert first is not second


class TestReporting:
    """Tests for step records and report finalization."""

    def test_on_step_called_in_order(self, make_engine):
        """Test the step callback fires once per step in order."""
        seen = []
        mods = [FakeModule("a"), FakeModule("b", available=False)]
        engine = make_engine(mods, [workflow("ab", ["a", "b"])], on_step=seen.append)

        engine.run_workflow("ab")

        assert [(s.module_name, s.status) for s in seen] == [
            ("a", StepStatus.COMPLETED),
            ("b", StepStatus.SKIPPED),
        ]

    def test_report_is_read_only_after_run(self, make_engine):
        """Test a finalized report rejects further steps."""
        report = make_engine([FakeModule("a")]).run_module("a")

        assert report.finalized
        with pytest.raises(ReportFinalized):
            report._append(report.steps[0])

    def test_unavailable_single_module_is_skipped(self, make_engine, journal):
        """Test a direct run of an unavailable module skips it."""
        report = make_engine([FakeModule("a", available=False, journal=journal)]).run_module("a")

        assert statuses(report) == [("a", StepStatus.SKIPPED)]
        assert report.overall_status is OverallStatus.ALL_COMPLETED
        assert journal == []


class TestRebootCheck:
    """Tests for the reboot offer after a workflow."""

    def _engine(self, make_engine, needed, answers=(), interactive=True, file_data=None):
        reboots = []
        engine = make_engine(
            [FakeModule("a")],
            [workflow("w", ["a"])],
            confirmer=ScriptedConfirmer([True, *answers]),
            interactive=interactive,
            file_data=file_data,
            reboot_check=lambda: needed,
            reboot=lambda: reboots.append("reboot"),
        )
        return engine, reboots

    def test_reboot_after_confirmation(self, make_engine):
        """Test the host reboots when the operator agrees."""
        engine, reboots = self._engine(make_engine, needed=True, answers=[True])

        report = engine.run_workflow("w")

        assert report.overall_status is OverallStatus.ALL_COMPLETED
        assert engine.confirmer.prompts[-1] == "Reboot system now?"
        assert reboots == ["reboot"]

    def test_reboot_postponed(self, make_engine, caplog):
        """Test declining the reboot leaves the host running and warns."""
        engine, reboots = self._engine(make_engine, needed=True, answers=[False])

        with caplog.at_level(logging.INFO, logger="flux"):
            engine.run_workflow("w")

        assert reboots == []
        assert "Remember to reboot later" in caplog.text

    def test_no_prompt_when_not_needed(self, make_engine):
        """Test nothing is asked when no reboot is pending."""
        engine, reboots = self._engine(make_engine, needed=False)

        engine.run_workflow("w")

        assert engine.confirmer.prompts[-1].endswith("Continue with workflow execution?")
        assert reboots == []

    def test_non_interactive_only_warns(self, make_engine, caplog):
        """Test auto mode reports the pending reboot without rebooting."""
        engine, reboots = self._engine(make_engine, needed=True, interactive=False)

        with caplog.at_level(logging.WARNING, logger="flux"):
            engine.run_workflow("w")

        assert reboots == []
        assert "System reboot is required" in caplog.text

    def test_skipped_in_dry_run(self, make_engine):
        """Test a dry run never checks for a pending reboot."""
        engine, reboots = self._engine(
            make_engine, needed=True, answers=[True], file_data={"general": {"mode": "dry-run"}}
        )

        engine.run_workflow("w")

        assert len(engine.confirmer.prompts) == 1
        assert reboots == []

    def test_not_offered_after_abort(self, make_engine):
        """Test an aborted workflow does not offer a reboot."""
        reboots = []
        engine = make_engine(
            [FakeModule("a", error=ModuleError("boom"))],
            [workflow("w", ["a"])],
            reboot_check=lambda: True,
            reboot=lambda: reboots.append("reboot"),
            interactive=True,
            confirmer=ScriptedConfirmer([True, True]),
        )

        report = engine.run_workflow("w")

        assert report.overall_status is OverallStatus.ABORTED
        assert reboots == []
        assert len(engine.confirmer.prompts) == 1
