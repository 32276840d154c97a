"""
Tests for fixer/executor.py.

Covers:
  - applied / failed / skipped / rolled_back outcomes
  - rollback restores files, reverts live state and halts the plan
  - acknowledgment, manual-only, lock contention, operator abort
  - lockout post-verify failure → rolled_back + halted
  - failed rollback escalates as RollbackFailedError carrying the log
"""

import threading

import pytest

import vpsaudit.fixer.executor as executor_mod
from vpsaudit.checks.base import FixResult, FixSpec
from vpsaudit.errors import (
    REASON_ABORTED,
    REASON_HALTED,
    REASON_NOT_ACKNOWLEDGED,
    RollbackFailedError,
)
from vpsaudit.fixer.backup import BackupStore
from vpsaudit.fixer.executor import execute_plan
from vpsaudit.fixer.guard import AllowRule, SafetyGuard
from vpsaudit.fixer.plan import PlanStep, RemediationPlan
from vpsaudit.registry import ModuleRegistry


SSH = AllowRule(port=22)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _plan(*specs: FixSpec) -> RemediationPlan:
    return RemediationPlan(tuple(
        PlanStep(
            fix_id=spec.fix_id,
            module_name="fake",
            finding_id=f"{spec.fix_id}.finding",
            danger=spec.danger,
            severity="medium",
        )
        for spec in specs
    ))


def _run(module, plan, tmp_path, channel, acks=(), **kwargs):
    return execute_plan(
        plan,
        acks,
        ModuleRegistry([module]),
        BackupStore(tmp_path / "backups"),
        SafetyGuard(channel, 22),
        **kwargs,
    )


# ── Basic outcomes ────────────────────────────────────────────────────────────

class TestOutcomes:
    def test_all_steps_applied_in_order(self, tmp_path, fake_module, fake_channel):
        specs = [FixSpec("fake.a"), FixSpec("fake.b")]
        module = fake_module(fixes=specs, results={s.fix_id: FixResult.success() for s in specs})

        log = _run(module, _plan(*specs), tmp_path, fake_channel())

        assert [o.result for o in log.outcomes] == ["applied", "applied"]
        assert module.applied == ["fake.a", "fake.b"]
        assert log.halted == []
        assert not log.has_failures

    def test_failure_without_snapshot_is_failed_and_continues(self, tmp_path, fake_module, fake_channel):
        specs = [FixSpec("fake.a"), FixSpec("fake.b")]
        module = fake_module(fixes=specs, results={
            "fake.a": FixResult.failure("nope"),
            "fake.b": FixResult.success(),
        })

        log = _run(module, _plan(*specs), tmp_path, fake_channel())

        assert [(o.fix_id, o.result) for o in log.outcomes] == [("fake.a", "failed"), ("fake.b", "applied")]
        assert log.outcomes[0].error == "nope"
        assert log.has_failures
        assert module.reverted == []

    def test_unacknowledged_confirm_required_is_skipped(self, tmp_path, fake_module, fake_channel):
        spec = FixSpec("fake.risky", "confirm_required")
        module = fake_module(fixes=[spec], results={"fake.risky": FixResult.success()})

        log = _run(module, _plan(spec), tmp_path, fake_channel())

        assert log.outcomes[0].result == "skipped"
        assert log.outcomes[0].error == REASON_NOT_ACKNOWLEDGED
        assert module.applied == []

    def test_acknowledged_confirm_required_runs(self, tmp_path, fake_module, fake_channel):
        spec = FixSpec("fake.risky", "confirm_required")
        module = fake_module(fixes=[spec], results={"fake.risky": FixResult.success()})

        log = _run(module, _plan(spec), tmp_path, fake_channel(), acks=["fake.risky"])

        assert log.outcomes[0].result == "applied"

    def test_manual_only_fix_is_skipped(self, tmp_path, fake_module, fake_channel):
        spec = FixSpec("fake.manual")
        module = fake_module(fixes=[spec])  # no handler

        log = _run(module, _plan(spec), tmp_path, fake_channel())

        assert log.outcomes[0].result == "skipped"
        assert log.outcomes[0].error.startswith("manual-only")
        assert not log.has_failures


# ── Rollback ──────────────────────────────────────────────────────────────────

class TestRollback:
    def test_rolled_back_step_halts_the_plan(self, tmp_path, fake_module, fake_channel):
        target = tmp_path / "app.conf"
        target.write_text("original\n")

        def broken_write():
            target.write_text("half-written\n")
            return FixResult.failure("validation failed")

        specs = [FixSpec("fake.a"), FixSpec("fake.b", mutates=(str(target),)), FixSpec("fake.c"),
                 FixSpec("fake.d")]
        module = fake_module(fixes=specs, results={
            "fake.a": FixResult.success(),
            "fake.b": broken_write,
            "fake.c": FixResult.success(),
            "fake.d": FixResult.success(),
        })

        log = _run(module, _plan(*specs), tmp_path, fake_channel())

        # nothing after the rolled-back step executes
        assert len(log.outcomes) == 2
        assert log.outcomes[1].result == "rolled_back"
        assert log.outcomes[1].error == "validation failed"
        assert log.outcomes[1].backup_refs
        assert [(o.fix_id, o.result, o.error) for o in log.halted] == [
            ("fake.c", "skipped", REASON_HALTED),
            ("fake.d", "skipped", REASON_HALTED),
        ]
        assert module.applied == ["fake.a", "fake.b"]
        assert module.reverted == ["fake.b"]
        assert target.read_text() == "original\n"

    def test_created_file_is_removed_on_rollback(self, tmp_path, fake_module, fake_channel):
        target = tmp_path / "new.conf"

        def create_then_fail():
            target.write_text("new\n")
            return FixResult.failure("reload failed")

        spec = FixSpec("fake.create", mutates=(str(target),))
        module = fake_module(fixes=[spec], results={"fake.create": create_then_fail})

        log = _run(module, _plan(spec), tmp_path, fake_channel())

        assert log.outcomes[0].result == "rolled_back"
        assert not target.exists()

    def test_failed_rollback_raises_with_log(self, tmp_path, fake_module, fake_channel):
        conf_dir = tmp_path / "etc"
        conf_dir.mkdir()
        target = conf_dir / "app.conf"
        target.write_text("original\n")

        def destroy_directory():
            target.unlink()
            conf_dir.rmdir()
            return FixResult.failure("everything is gone")

        specs = [FixSpec("fake.destroy", mutates=(str(target),)), FixSpec("fake.after")]
        module = fake_module(fixes=specs, results={
            "fake.destroy": destroy_directory,
            "fake.after": FixResult.success(),
        })

        with pytest.raises(RollbackFailedError) as exc:
            _run(module, _plan(*specs), tmp_path, fake_channel())

        log = exc.value.log
        assert log.outcomes[-1].fix_id == "fake.destroy"
        assert log.outcomes[-1].result == "failed"
        assert "Rollback failed" in log.outcomes[-1].error
        assert [o.fix_id for o in log.halted] == ["fake.after"]
        assert module.applied == ["fake.destroy"]


# ── Lockout protection ────────────────────────────────────────────────────────

class TestLockoutProtected:
    def test_post_verify_failure_rolls_back_and_halts(self, tmp_path, fake_module, fake_channel):
        channel = fake_channel(rules={SSH})
        conf = tmp_path / "ufw.conf"
        conf.write_text("ENABLED=no\n")

        def enable_and_drop_ssh():
            conf.write_text("ENABLED=yes\n")
            channel.rules.discard(SSH)
            return FixResult.success()

        def restore_ssh():
            channel.rules.add(SSH)
            return FixResult.success()

        specs = [FixSpec("fake.enable", "lockout_protected", mutates=(str(conf),)), FixSpec("fake.next")]
        module = fake_module(
            fixes=specs,
            results={"fake.enable": enable_and_drop_ssh, "fake.next": FixResult.success()},
            revert_result=restore_ssh,
        )

        assert SSH in channel.rules
        log = _run(module, _plan(*specs), tmp_path, channel)

        assert len(log.outcomes) == 1
        assert log.outcomes[0].result == "rolled_back"
        assert log.outcomes[0].error.startswith("LockoutVerificationFailure")
        assert [(o.fix_id, o.error) for o in log.halted] == [("fake.next", REASON_HALTED)]
        assert conf.read_text() == "ENABLED=no\n"
        assert SSH in channel.rules
        assert "fake.next" not in module.applied

    def test_protection_failure_before_apply_is_failed(self, tmp_path, fake_module, fake_channel):
        spec = FixSpec("fake.enable", "lockout_protected")
        module = fake_module(fixes=[spec], results={"fake.enable": FixResult.success()})

        log = _run(module, _plan(spec), tmp_path, fake_channel(can_add=False))

        assert log.outcomes[0].result == "failed"
        assert module.applied == []

    def test_verified_apply_is_applied(self, tmp_path, fake_module, fake_channel):
        channel = fake_channel()
        spec = FixSpec("fake.enable", "lockout_protected")
        module = fake_module(fixes=[spec], results={"fake.enable": FixResult.success()})

        log = _run(module, _plan(spec), tmp_path, channel)

        assert log.outcomes[0].result == "applied"
        assert SSH in channel.rules


# ── Locks and abort ───────────────────────────────────────────────────────────

class TestLocksAndAbort:
    def test_held_lock_fails_step_without_applying(self, tmp_path, fake_module, fake_channel, monkeypatch):
        monkeypatch.setattr(executor_mod, "lock_held", lambda path: True)
        spec = FixSpec("fake.apt", locks=("/var/lib/dpkg/lock-frontend",))
        module = fake_module(fixes=[spec], results={"fake.apt": FixResult.success()})

        log = _run(module, _plan(spec), tmp_path, fake_channel(), lock_wait=0)

        assert log.outcomes[0].result == "failed"
        assert log.outcomes[0].error.startswith("LockContention")
        assert module.applied == []

    def test_lock_released_during_wait(self, tmp_path, fake_module, fake_channel, monkeypatch):
        polls = iter([True, False])
        monkeypatch.setattr(executor_mod, "lock_held", lambda path: next(polls))
        monkeypatch.setattr(executor_mod, "_LOCK_POLL_INTERVAL", 0.01)
        spec = FixSpec("fake.apt", locks=("/var/lib/dpkg/lock",))
        module = fake_module(fixes=[spec], results={"fake.apt": FixResult.success()})

        log = _run(module, _plan(spec), tmp_path, fake_channel(), lock_wait=5)

        assert log.outcomes[0].result == "applied"

    def test_lock_contention_reported_by_module(self, tmp_path, fake_module, fake_channel):
        spec = FixSpec("fake.apt")
        module = fake_module(fixes=[spec], results={"fake.apt": FixResult.locked("Could not get lock")})

        log = _run(module, _plan(spec), tmp_path, fake_channel())

        assert log.outcomes[0].result == "failed"
        assert "LockContention" in log.outcomes[0].error

    def test_cancel_before_start_halts_everything(self, tmp_path, fake_module, fake_channel):
        specs = [FixSpec("fake.a"), FixSpec("fake.b")]
        module = fake_module(fixes=specs, results={s.fix_id: FixResult.success() for s in specs})
        cancel = threading.Event()
        cancel.set()

        log = _run(module, _plan(*specs), tmp_path, fake_channel(), cancel=cancel)

        assert log.aborted
        assert log.outcomes == []
        assert [o.error for o in log.halted] == [REASON_ABORTED, REASON_ABORTED]
        assert module.applied == []

    def test_cancel_between_steps(self, tmp_path, fake_module, fake_channel):
        cancel = threading.Event()

        def apply_and_interrupt():
            cancel.set()
            return FixResult.success()

        specs = [FixSpec("fake.a"), FixSpec("fake.b")]
        module = fake_module(fixes=specs, results={
            "fake.a": apply_and_interrupt,
            "fake.b": FixResult.success(),
        })

        log = _run(module, _plan(*specs), tmp_path, fake_channel(), cancel=cancel)

        assert [o.result for o in log.outcomes] == ["applied"]
        assert [o.fix_id for o in log.halted] == ["fake.b"]
        assert log.count("skipped") == 1
