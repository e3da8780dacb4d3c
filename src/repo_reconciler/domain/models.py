import enum
import re
from typing import Dict, FrozenSet, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    TypeAdapter,
    ValidationError,
    field_serializer,
    field_validator,
)

# Fields the reconciler is allowed to write. name and repository_url only locate the remote.
RECONCILED_FIELDS = ("homepage_url", "description", "topics")

# npm package names, optionally scoped (@scope/name)
PACKAGE_NAME_PATTERN = re.compile(r"^(?:@[a-z0-9-*~][a-z0-9-*._~]*/)?[a-z0-9-~][a-z0-9-._~]*$")

_HTTP_URL = TypeAdapter(HttpUrl)

FieldValue = Union[FrozenSet[str], str]


def _check_url(value: Optional[str]) -> Optional[str]:
    # Validate only: the original string is kept so comparisons stay exact.
    if value is not None:
        try:
            _HTTP_URL.validate_python(value)
        except ValidationError:
            raise ValueError(f"'{value}' is not a well-formed http(s) URL") from None
    return value


def _sorted_if_set(value):
    if isinstance(value, frozenset):
        return sorted(value)
    return value


class CanonicalMetadata(BaseModel):
    """
    Immutable source of truth for a project's identity, links and topics.
    Loaded once per run from the local descriptor.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Unique package identifier")
    homepage_url: Optional[str] = Field(None, description="Project homepage URL")
    description: Optional[str] = Field(None, description="Free-text project description")
    repository_url: str = Field(..., description="URL of the canonical hosting location")
    topics: FrozenSet[str] = Field(default_factory=frozenset, description="Deduplicated topic names")

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        if not PACKAGE_NAME_PATTERN.match(value):
            raise ValueError(f"'{value}' is not a valid package name")
        return value

    @field_validator("homepage_url", "repository_url")
    @classmethod
    def _validate_url(cls, value: Optional[str]) -> Optional[str]:
        return _check_url(value)

    @field_serializer("topics")
    def _serialize_topics(self, topics: FrozenSet[str]):
        return sorted(topics)


class RemoteMetadata(BaseModel):
    """
    Live state of the repository on the hosting platform, fetched fresh per run.
    """
    model_config = ConfigDict(frozen=True)

    identifier: str = Field(..., description="owner/repo on the hosting platform")
    name: str = Field(..., description="Repository name")
    homepage_url: Optional[str] = None
    description: Optional[str] = None
    repository_url: Optional[str] = None
    topics: FrozenSet[str] = Field(default_factory=frozenset)

    @field_serializer("topics")
    def _serialize_topics(self, topics: FrozenSet[str]):
        return sorted(topics)


class FieldDiff(BaseModel):
    """A single differing field. For topics, `missing` holds the canonical topics absent remotely."""
    model_config = ConfigDict(frozen=True)

    field: str
    canonical: FieldValue
    remote: Optional[FieldValue] = None
    missing: FrozenSet[str] = Field(default_factory=frozenset)

    @property
    def target(self) -> FieldValue:
        """The value to send to the remote: missing topics, or the canonical scalar."""
        if self.field == "topics":
            return self.missing
        return self.canonical

    @field_serializer("canonical", "remote", "missing")
    def _serialize_values(self, value):
        return _sorted_if_set(value)


class DiffResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    entries: Dict[str, FieldDiff] = Field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, field: str) -> bool:
        return field in self.entries

    def __getitem__(self, field: str) -> FieldDiff:
        return self.entries[field]

    def fields(self) -> FrozenSet[str]:
        return frozenset(self.entries)


class FieldStatus(str, enum.Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"
    CONVERGED = "converged"
    DIVERGING = "diverging"


class FieldOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    status: FieldStatus
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status not in (FieldStatus.FAILED, FieldStatus.DIVERGING)


class ApplyReport(BaseModel):
    """Per-field result of the apply step."""
    model_config = ConfigDict(frozen=True)

    outcomes: Dict[str, FieldOutcome] = Field(default_factory=dict)

    def fields_with(self, status: FieldStatus) -> FrozenSet[str]:
        return frozenset(name for name, outcome in self.outcomes.items() if outcome.status == status)

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes.values())


class VerifyReport(BaseModel):
    """Per-field result of the verify step, after polling up to the grace period."""
    model_config = ConfigDict(frozen=True)

    outcomes: Dict[str, FieldOutcome] = Field(default_factory=dict)
    attempts: int = Field(0, ge=0)
    timed_out: bool = False

    def fields_with(self, status: FieldStatus) -> FrozenSet[str]:
        return frozenset(name for name, outcome in self.outcomes.items() if outcome.status == status)

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes.values())


class ReconcileResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    dry_run: bool = False
    diff: DiffResult
    apply_report: Optional[ApplyReport] = None
    verify_report: Optional[VerifyReport] = None

    @property
    def exit_code(self) -> int:
        """0 when everything converged (or nothing to do), 1 on any failed or diverging field."""
        for report in (self.apply_report, self.verify_report):
            if report is not None and not report.ok:
                return 1
        return 0
