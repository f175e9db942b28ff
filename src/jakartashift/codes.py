"""Code constants shared by the kernel, the api and persisted records.

These constants prevent stringly-typed states and ensure client code
compares against the exact values written to reports and progress files.
"""

from enum import Enum


class NamespaceState(str, Enum):
    """Namespace state of an artifact."""

    LEGACY = "legacy"
    SUCCESSOR = "successor"
    MIXED = "mixed"
    UNKNOWN = "unknown"


class CompatibilityLevel(str, Enum):
    """How much work replacing a legacy artifact with its successor takes."""

    DROP_IN = "drop-in"
    MINOR_CHANGES = "minor-changes"
    MAJOR_REFACTOR = "major-refactor"
    NONE = "none"


class BlockerKind(str, Enum):
    """Kinds of obstacles that prevent migrating an artifact."""

    NO_EQUIVALENT = "no-equivalent"
    TRANSITIVE_CONFLICT = "transitive-conflict"
    BINARY_INCOMPATIBLE = "binary-incompatible"


class MatchTier(str, Enum):
    """Which classification rule decided an artifact's namespace state."""

    FAMILY_RULE = "family-rule"
    EXACT = "exact"
    PREFIX = "prefix"
    UNKNOWN = "unknown"


class FileKind(str, Enum):
    """Planning category of a project file."""

    BUILD = "build"
    SOURCE = "source"
    CONFIG = "config"
    TEST = "test"


class UsageKind(str, Enum):
    """How a legacy symbol shows up in a file."""

    IMPORT = "import"
    STATIC_IMPORT = "static-import"
    QUALIFIED_REFERENCE = "qualified-reference"
    STRING_LITERAL = "string-literal"
    REFLECTIVE = "reflective"
    SERVICE_FILE = "service-file"
    XML_NAMESPACE = "xml-namespace"
    XML_CLASS_REFERENCE = "xml-class-reference"
    PROPERTY_KEY = "property-key"
    COORDINATE = "coordinate"


# Usage kinds that resolve names at runtime and cannot be checked by a compiler
DYNAMIC_USAGE_KINDS = frozenset({
    UsageKind.STRING_LITERAL,
    UsageKind.REFLECTIVE,
    UsageKind.SERVICE_FILE,
})


class ActionType(str, Enum):
    """Action types recorded on plan file actions."""

    UPDATE_DEPENDENCY = "update-dependency"
    UPDATE_IMPORTS = "update-imports"
    UPDATE_REFERENCES = "update-references"
    UPDATE_XML_NAMESPACE = "update-xml-namespace"
    UPDATE_CLASS_REFERENCES = "update-class-references"
    UPDATE_STRING_LITERALS = "update-string-literals"
    RENAME_SERVICE_FILE = "rename-service-file"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MigrationStatus(str, Enum):
    """Tag of the migration state variant."""

    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    PHASE_COMPLETE = "phase-complete"
    VERIFIED = "verified"
    COMPLETE = "complete"
    FAILED = "failed"


class FileStatus(str, Enum):
    """Per-file execution status tracked by the progress record."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionOutcome(str, Enum):
    """Overall outcome of one execute() call."""

    COMPLETED = "completed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    FAILED = "failed"


class VerificationStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    TIMEOUT = "timeout"


class ErrorKind(str, Enum):
    """Kind of a runtime error parsed from process output."""

    CLASS_NOT_FOUND = "class-not-found"
    NO_CLASS_DEF_FOUND = "no-class-def-found"
    LINKAGE_ERROR = "linkage-error"
    NO_SUCH_METHOD = "no-such-method"
    CLASS_CAST = "class-cast"
    OTHER = "other"


class ErrorCategory(str, Enum):
    CLASSPATH_ISSUE = "classpath-issue"
    NAMESPACE_CONFLICT = "namespace-conflict"
    BINARY_INCOMPATIBILITY = "binary-incompatibility"
    UNKNOWN = "unknown"


class WarningCode(str, Enum):
    """Warning codes for recoverable problems (never abort a run)."""

    MANIFEST_PARSE_ERROR = "MANIFEST_PARSE_ERROR"
    NO_MANIFEST_FOUND = "NO_MANIFEST_FOUND"
    SOURCE_READ_ERROR = "SOURCE_READ_ERROR"
    UNRESOLVED_VERSION = "UNRESOLVED_VERSION"
    ARCHIVE_READ_ERROR = "ARCHIVE_READ_ERROR"
    RUNTIME_WARNING = "RUNTIME_WARNING"
    PARTIAL_GRAPH = "PARTIAL_GRAPH"
