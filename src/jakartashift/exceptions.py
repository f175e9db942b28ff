"""Exception hierarchy for jakartashift.

Recoverable problems (a bad manifest, an unreadable source file) never raise
out of the public api; they are reported as warnings. The exceptions below
are either fatal for a run or signal caller mistakes.
"""


class EngineError(Exception):
    """Base exception for all jakartashift errors."""
    pass


class ProjectRootError(EngineError):
    """Raised when the project root is missing or unreadable (fatal)."""
    def __init__(self, path, detail: str = "not a readable directory"):
        self.path = path
        super().__init__(f"Project root {path}: {detail}")


class ManifestParseError(EngineError):
    """Raised by manifest parsers; the graph builder records it and moves on."""
    def __init__(self, path: str, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"Failed to parse manifest {path}: {detail}")


class KnowledgeBaseError(EngineError):
    """Raised when the compatibility knowledge base cannot be loaded."""
    pass


class CheckpointStoreError(EngineError):
    """Raised when the persisted progress record or a snapshot is corrupt (fatal)."""
    pass


class InvalidTransitionError(EngineError):
    """Raised when a migration state transition is not allowed."""
    def __init__(self, current: str, attempted: str, detail: str = ""):
        self.current = current
        self.attempted = attempted
        msg = f"Cannot {attempted} from state {current}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class PlanMismatchError(EngineError):
    """Raised when resuming with a plan that differs from the recorded one."""
    def __init__(self, recorded: str, given: str):
        self.recorded = recorded
        self.given = given
        super().__init__(
            f"Plan fingerprint {given} does not match the in-progress plan {recorded}. "
            f"Roll back or reset the run before executing a recomputed plan."
        )


class RewriteError(EngineError):
    """Raised by a rewriter when a single file cannot be transformed."""
    pass


class VerificationSetupError(EngineError):
    """Raised when the runtime verifier cannot even start the child process."""
    pass
