import typing
from enum import StrEnum

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = structlog.get_logger("Models")


class ServerRole(StrEnum):
    PROXY = "proxy"
    DANTE = "dante"
    OTHER = "other"


class Record(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default="", description="Record key in the fetched collection")

    @field_validator("id", mode="before")
    def coerce_id(cls, v: typing.Any) -> str:
        return "" if v is None else str(v)


class Server(Record):
    """A downstream participant that receives relayed traffic."""

    address: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("address", "ip"),
        description="Host or IP, optionally with an explicit :port",
    )
    role: ServerRole = Field(default=ServerRole.OTHER, description="Decides which kinds it gets")
    enabled: bool = Field(default=False, description="Disabled servers never receive traffic")

    @field_validator("address", mode="after")
    def strip_address(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("address must not be blank")
        return v

    @field_validator("role", mode="before")
    def coerce_role(cls, v: typing.Any) -> ServerRole:
        if isinstance(v, str):
            try:
                return ServerRole(v.strip().lower())
            except ValueError:
                pass
        return ServerRole.OTHER


class Source(Record):
    """A traffic origin that gets its own relay."""

    kind: str = Field(default="", description="Collection the record was loaded from")
    listen_port: int = Field(
        ...,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("listen_port", "proxy_port"),
        description="Local UDP port the relay binds",
    )
    destination_port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("destination_port", "janus_port"),
        description="Port appended to server addresses that carry none",
    )
    enabled: bool = Field(default=False, description="Disabled sources never start a relay")

    # Passthrough metadata
    title: str | None = None
    language: str | None = None

    @property
    def forward_port(self) -> int:
        """Port used for servers without an explicit one; falls back to the listen port."""
        if self.destination_port is None:
            return self.listen_port
        return self.destination_port


class RelayConfig(BaseModel):
    """Everything the relay manager needs, fetched once at startup."""

    servers: list[Server] = Field(default_factory=list)
    sources: dict[str, list[Source]] = Field(default_factory=dict)

    def enabled_servers(self) -> list[Server]:
        return [s for s in self.servers if s.enabled]

    def enabled_sources(self, kind: str) -> list[Source]:
        return [s for s in self.sources.get(kind, []) if s.enabled]


ModelT = typing.TypeVar("ModelT", Server, Source)


def _iter_records(payload: typing.Any) -> typing.Iterator[tuple[str, typing.Any]]:
    if isinstance(payload, dict):
        yield from ((str(key), value) for key, value in payload.items())
    elif isinstance(payload, list):
        yield from ((str(idx), value) for idx, value in enumerate(payload))


def decode_records(
    payload: typing.Any,
    model: type[ModelT],
    collection: str,
    **extra: typing.Any,
) -> list[ModelT]:
    """
    Decode one fetched collection into typed records.

    The store returns either an object keyed by record id or a plain array.
    Records keep document order. Invalid records are logged and skipped so a
    single bad entry cannot hide the rest of the collection.
    """
    if payload is not None and not isinstance(payload, dict | list):
        logger.warning(
            "Unexpected collection shape", collection=collection, type=type(payload).__name__
        )
        return []

    records: list[ModelT] = []
    for record_id, raw in _iter_records(payload):
        if not isinstance(raw, dict):
            logger.warning("Skipping non-object record", collection=collection, id=record_id)
            continue
        data = {**raw, **extra}
        data.setdefault("id", record_id)
        try:
            records.append(model.model_validate(data))
        except ValidationError as e:
            logger.warning(
                "Skipping invalid record",
                collection=collection,
                id=record_id,
                errors=e.error_count(),
                error=str(e),
            )
    return records
