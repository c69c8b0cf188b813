"""Lifecycle actions delivered through the privileged kill helper.

Helper exit codes:
    0  signal delivered
    1  not permitted (triggers one elevated retry)
    2  invalid argument (pid rejected)
    3  no such process (treated as success: the process may already have
       been reaped after its parent was terminated)
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass

import structlog

from resmon.host import HelperLauncher
from resmon.process import ProcessAction

log = structlog.get_logger()

EXIT_OK = 0
EXIT_NO_PERMISSION = 1
EXIT_INVALID = 2
EXIT_NO_SUCH_PROCESS = 3

# pkexec: authorization dismissed / not authorized
ELEVATION_REFUSED = (126, 127)

SUCCESS_CODES = (EXIT_OK, EXIT_NO_SUCH_PROCESS)


class ActionError(Exception):
    """An action could not be applied to a pid."""

    def __init__(self, action: ProcessAction, pid: int, message: str):
        super().__init__(f"couldn't {action.value} {pid}: {message}")
        self.action = action
        self.pid = pid


class PermissionDeniedError(ActionError):
    """Not permitted even after the elevated retry."""


class ProcessNotFoundError(ActionError):
    """The helper rejected the pid as invalid."""


class UnknownExitError(ActionError):
    """The helper exited with a code outside its contract."""

    def __init__(self, action: ProcessAction, pid: int, code: int, elevated: bool = False):
        how = "with elevated privileges " if elevated else ""
        super().__init__(action, pid, f"helper failed {how}with status code {code}")
        self.code = code
        self.elevated = elevated


class HelperLaunchError(ActionError):
    """The helper (or the elevation wrapper) could not be started."""


@dataclass(frozen=True)
class ActionOutcome:
    """Result of one action on one pid."""

    pid: int
    action: ProcessAction
    error: ActionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ActionReport:
    """Success/failure counts for a fan-out over several pids."""

    action: ProcessAction
    tried: int
    successful: int

    @property
    def unsuccessful(self) -> int:
        return self.tried - self.successful

    @property
    def all_ok(self) -> bool:
        return self.tried == self.successful

    @classmethod
    def from_outcomes(cls, action: ProcessAction, outcomes: list[ActionOutcome]) -> "ActionReport":
        return cls(
            action=action,
            tried=len(outcomes),
            successful=sum(1 for o in outcomes if o.ok),
        )


class ActionExecutor:
    """Delivers lifecycle actions by spawning the kill helper.

    Calls are independent subprocesses and may run concurrently with each
    other and with a refresh. Nothing is retried except the single elevated
    attempt after exit code 1.
    """

    def __init__(self, launcher: HelperLauncher):
        self._launcher = launcher

    def _run(self, argv: list[str], action: ProcessAction, pid: int) -> int:
        try:
            completed = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                capture_output=True,
            )
        except OSError as e:
            raise HelperLaunchError(action, pid, f"failed to run {argv[0]!r}: {e}") from e
        return completed.returncode

    def apply(self, action: ProcessAction, pid: int) -> None:
        """Apply action to pid.

        Raises:
            PermissionDeniedError: Still not permitted after escalation.
            ProcessNotFoundError: The helper rejected the pid.
            UnknownExitError: Any other non-success exit code.
            HelperLaunchError: The helper could not be spawned.
        """
        arg = action.helper_arg
        code = self._run(self._launcher.kill_argv(arg, pid), action, pid)

        if code in SUCCESS_CODES:
            log.debug("action_applied", action=arg, pid=pid, code=code)
            return
        if code == EXIT_NO_PERMISSION:
            log.debug("action_escalating", action=arg, pid=pid)
            self._apply_elevated(action, pid)
            return
        if code == EXIT_INVALID:
            raise ProcessNotFoundError(action, pid, "helper rejected the pid")
        raise UnknownExitError(action, pid, code)

    def _apply_elevated(self, action: ProcessAction, pid: int) -> None:
        arg = action.helper_arg
        code = self._run(self._launcher.elevated_kill_argv(arg, pid), action, pid)

        if code in SUCCESS_CODES:
            log.debug("action_applied", action=arg, pid=pid, code=code, elevated=True)
            return
        if code == EXIT_NO_PERMISSION or code in ELEVATION_REFUSED:
            raise PermissionDeniedError(action, pid, f"not permitted (status code {code})")
        if code == EXIT_INVALID:
            raise ProcessNotFoundError(action, pid, "helper rejected the pid")
        raise UnknownExitError(action, pid, code, elevated=True)

    def outcome(self, action: ProcessAction, pid: int) -> ActionOutcome:
        """Apply action to pid and capture the result instead of raising."""
        try:
            self.apply(action, pid)
        except ActionError as e:
            log.warning("action_failed", action=action.value, pid=pid, error=str(e))
            return ActionOutcome(pid=pid, action=action, error=e)
        return ActionOutcome(pid=pid, action=action)
