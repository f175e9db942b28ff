"""jakartashift: phased javax to jakarta migration planning, execution and verification."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("jakartashift")
except PackageNotFoundError:
    __version__ = "dev"

# Public API exports
from jakartashift.api import (
    AnalysisResult,
    VerificationContext,
    VerificationResult,
    analyze,
    execute,
    plan,
    verify,
)
from jakartashift.codes import BlockerKind, MigrationStatus, NamespaceState, WarningCode
from jakartashift.config import EngineSettings

__all__ = [
    "__version__",
    "analyze",
    "plan",
    "execute",
    "verify",
    "AnalysisResult",
    "VerificationContext",
    "VerificationResult",
    "BlockerKind",
    "MigrationStatus",
    "NamespaceState",
    "WarningCode",
    "EngineSettings",
]
