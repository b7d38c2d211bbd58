"""
Stage policy for the backup and restore pipelines.

Each pipeline is a fixed sequence of named stages. A fatal stage aborts the
run when it raises; a best-effort stage logs the failure, records it as a
warning and lets the run continue.
"""

import logging
from typing import Callable, Dict, List, Any, Optional


logger = logging.getLogger(__name__)

FATAL = 'fatal'
BEST_EFFORT = 'best_effort'

BACKUP_STAGES: Dict[str, str] = {
    'dump': FATAL,
    'metadata_snapshot': FATAL,
    'auxiliary_snapshot': BEST_EFFORT,
    'config_snapshot': FATAL,
    'compress': FATAL,
    'remote_upload': BEST_EFFORT,
    'local_cleanup': BEST_EFFORT,
    'retention_prune': BEST_EFFORT,
    'integrity_verify': FATAL,
}

RESTORE_STAGES: Dict[str, str] = {
    'locate': FATAL,
    'extract': FATAL,
    'validate': FATAL,
    'pre_restore_snapshot': BEST_EFFORT,
    'execute_restore': FATAL,
    'verify': BEST_EFFORT,
    'cleanup': BEST_EFFORT,
}


class StageFailure(Exception):
    """Raised when a fatal stage fails."""

    def __init__(self, stage: str, error: Exception):
        self.stage = stage
        self.error = error
        super().__init__(str(error))


class StageRunner:
    """
    Runs pipeline stages under a policy table.

    Usage:
        runner = StageRunner(BACKUP_STAGES, log=self._log)
        dump = runner.run('dump', self._dump, staging)
    """

    def __init__(self, policy: Dict[str, str], log: Optional[Callable[..., None]] = None):
        self.policy = policy
        self.warnings: List[Dict[str, str]] = []
        self.completed: List[str] = []
        self.skipped: List[str] = []
        self._log = log or (lambda message, level=logging.INFO: logger.log(level, message))

    def run(self, stage: str, func: Callable[..., Any], *args, default: Any = None, **kwargs) -> Any:
        """
        Run one stage.

        Returns:
            The stage's return value, or `default` if a best-effort stage failed

        Raises:
            StageFailure: If a fatal stage raised
            KeyError: If the stage is not in the policy table
        """
        policy = self.policy[stage]

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if policy == FATAL:
                self._log(f"Stage {stage} failed: {e}", level=logging.ERROR)
                raise StageFailure(stage, e) from e

            self._log(f"Warning: stage {stage} failed: {e}", level=logging.WARNING)
            self.warnings.append({'stage': stage, 'message': str(e)})
            return default

        self.completed.append(stage)
        return result

    def skip(self, stage: str, reason: str):
        """Record a stage that was not run."""
        if stage not in self.policy:
            raise KeyError(stage)
        self.skipped.append(stage)
        self._log(f"Skipping {stage}: {reason}")

    def warn(self, stage: str, message: str):
        """Record a warning raised inside a stage that still succeeded."""
        self._log(f"Warning: {message}", level=logging.WARNING)
        self.warnings.append({'stage': stage, 'message': message})
