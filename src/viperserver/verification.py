"""Status messages streamed by ViperServer while a job runs.

Every line of ``GET /verify/{id}`` is a JSON object of the form::

    {"msg_type": "<kind>", "msg_body": <object or array>}

``decode_line`` dispatches on ``msg_type`` to exactly one of the models
below. Unknown kinds are rejected; there is no catch-all variant.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Optional, Type, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    ValidationError,
)

from viperserver.errors import LineDecodeError


# Strings the engine uses in place of a position object
NO_POSITION_SENTINELS = frozenset({"<no position>", "<undefined>"})


class Backend(str, Enum):
    """Verification backends ViperServer can run."""

    CARBON = "carbon"
    SILICON = "silicon"


# --- Payload Models ---


class Position(BaseModel):
    """Source span, e.g. ``start="3:5"``, ``end="3:12"``."""

    start: str
    end: str
    file: str


def _position_or_sentinel(value: Any) -> Any:
    if isinstance(value, str):
        if value in NO_POSITION_SENTINELS:
            return None
        raise ValueError(
            f'expected "<no position>" or "<undefined>" found {value!r}'
        )
    if value is None:
        raise ValueError("expected a position object or a sentinel string")
    return value


# Position object, or None when the engine sent one of the sentinels
OptionalPosition = Annotated[
    Optional[Position], BeforeValidator(_position_or_sentinel)
]


class Entity(BaseModel):
    """Program member a verification result refers to."""

    name: str
    position: OptionalPosition
    entity_type: str = Field(..., alias="type")

    model_config = ConfigDict(populate_by_name=True)


class DetailsError(BaseModel):
    """A single verification or parse error."""

    cached: StrictBool
    position: OptionalPosition
    tag: str
    text: str


class DetailsResult(BaseModel):
    errors: List[DetailsError]
    result_type: str = Field(..., alias="type")

    model_config = ConfigDict(populate_by_name=True)


class Details(BaseModel):
    """Details attached to AST construction and verification results.

    Keys outside the known fields are kept and exposed through ``extra``.
    """

    cached: Optional[StrictBool] = None
    result: Optional[DetailsResult] = None
    time: StrictInt
    entity: Optional[Entity] = None

    model_config = ConfigDict(extra="allow")

    @property
    def extra(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class ProgramOutlineMember(BaseModel):
    name: str
    position: OptionalPosition
    member_type: str = Field(..., alias="type")

    model_config = ConfigDict(populate_by_name=True)


class ViperType(BaseModel):
    kind: str
    # Plain string, or an object for composite types such as Seq[Int]
    typename: Any


class DefinitionType(BaseModel):
    name: str
    viper_type: Optional[ViperType] = Field(None, alias="viperType")

    model_config = ConfigDict(populate_by_name=True)


class ProgramDefinition(BaseModel):
    location: OptionalPosition
    name: str
    scope_start: str = Field(..., alias="scopeStart")
    scope_end: str = Field(..., alias="scopeEnd")
    definition_type: DefinitionType = Field(..., alias="type")

    model_config = ConfigDict(populate_by_name=True)


# --- Status Messages ---


class StatusMessage(BaseModel):
    """Base for every message kind; ``msg_type`` is the wire discriminant."""

    msg_type: ClassVar[str]

    @classmethod
    def from_body(cls, body: Any) -> "StatusMessage":
        """Validate a ``msg_body`` payload into this message kind."""
        return cls.model_validate(body)


class _ListBodyMessage(StatusMessage):
    """Message kinds whose ``msg_body`` is a bare JSON array."""

    warnings: List[Any] = Field(default_factory=list)

    @classmethod
    def from_body(cls, body: Any) -> "StatusMessage":
        return cls.model_validate({"warnings": body})


class CopyrightReport(StatusMessage):
    msg_type: ClassVar[str] = "copyright_report"

    text: str


class WarningsDuringParsing(_ListBodyMessage):
    msg_type: ClassVar[str] = "warnings_during_parsing"


class WarningsDuringTypechecking(_ListBodyMessage):
    msg_type: ClassVar[str] = "warnings_during_typechecking"


class InternalWarningMessage(StatusMessage):
    msg_type: ClassVar[str] = "internal_warning_message"

    text: str


class InvalidArgsReport(StatusMessage):
    msg_type: ClassVar[str] = "invalid_args_report"

    tool: str
    errors: List[DetailsError]


class AstConstructionResult(StatusMessage):
    msg_type: ClassVar[str] = "ast_construction_result"

    details: Details
    status: str


class ProgramOutline(StatusMessage):
    msg_type: ClassVar[str] = "program_outline"

    members: List[ProgramOutlineMember]


class ProgramDefinitions(StatusMessage):
    msg_type: ClassVar[str] = "program_definitions"

    definitions: List[ProgramDefinition]


class Statistics(StatusMessage):
    msg_type: ClassVar[str] = "statistics"

    domains: StrictInt
    fields: StrictInt
    functions: StrictInt
    methods: StrictInt
    predicates: StrictInt


class ExceptionReport(StatusMessage):
    msg_type: ClassVar[str] = "exception_report"

    message: str
    stacktrace: List[str]


class ConfigurationConfirmation(StatusMessage):
    msg_type: ClassVar[str] = "configuration_confirmation"

    text: str


class VerificationResult(StatusMessage):
    """Outcome of verifying the program or one of its members."""

    msg_type: ClassVar[str] = "verification_result"

    details: Details
    kind: str
    status: str
    verifier: Backend

    model_config = ConfigDict(extra="allow")

    @property
    def extra(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})

    @property
    def is_success(self) -> bool:
        return self.status == "success"


class BackendSubProcessReport(StatusMessage):
    msg_type: ClassVar[str] = "backend_sub_process_report"

    phase: str
    pid: Optional[StrictInt] = None
    process_exe: str
    tool: Backend

    model_config = ConfigDict(extra="allow")

    @property
    def extra(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


AnyStatusMessage = Union[
    CopyrightReport,
    WarningsDuringParsing,
    WarningsDuringTypechecking,
    InternalWarningMessage,
    InvalidArgsReport,
    AstConstructionResult,
    ProgramOutline,
    ProgramDefinitions,
    Statistics,
    ExceptionReport,
    ConfigurationConfirmation,
    VerificationResult,
    BackendSubProcessReport,
]

STATUS_MESSAGE_TYPES: Dict[str, Type[StatusMessage]] = {
    cls.msg_type: cls
    for cls in (
        CopyrightReport,
        WarningsDuringParsing,
        WarningsDuringTypechecking,
        InternalWarningMessage,
        InvalidArgsReport,
        AstConstructionResult,
        ProgramOutline,
        ProgramDefinitions,
        Statistics,
        ExceptionReport,
        ConfigurationConfirmation,
        VerificationResult,
        BackendSubProcessReport,
    )
}


def decode_line(line: str) -> StatusMessage:
    """Decode one line of a status stream.

    Args:
        line: A single JSON object, without its line terminator

    Returns:
        The status message selected by ``msg_type``

    Raises:
        LineDecodeError: If the line is not valid JSON, lacks ``msg_type`` or
            ``msg_body``, names an unknown kind, or has a malformed payload
    """
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as e:
        raise LineDecodeError(line, e) from e

    if not isinstance(payload, dict):
        raise LineDecodeError(line, ValueError("expected a JSON object"))

    msg_type = payload.get("msg_type")
    if not isinstance(msg_type, str):
        raise LineDecodeError(line, ValueError("missing or non-string msg_type"))
    if "msg_body" not in payload:
        raise LineDecodeError(line, ValueError("missing msg_body"))

    message_cls = STATUS_MESSAGE_TYPES.get(msg_type)
    if message_cls is None:
        raise LineDecodeError(line, ValueError(f"unknown msg_type {msg_type!r}"))

    try:
        return message_cls.from_body(payload["msg_body"])
    except ValidationError as e:
        raise LineDecodeError(line, e) from e
