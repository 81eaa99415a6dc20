"""Technique registry: stable identities keyed by unique short name."""

from __future__ import annotations

import logging
import re

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from fbksd_server.coordinator.errors import Conflict, InvalidTechnique, NotFound
from fbksd_server.coordinator.models import TechniqueMetadata, TechniqueType, TechniqueView
from fbksd_server.storage.common import to_utc_aware, utc_now
from fbksd_server.storage.sqlmodel_models import Technique

logger = logging.getLogger(__name__)

SHORT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,32}$")


class TechniqueRegistry:
    """Insert-only store of techniques."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def register(
        self,
        short_name: str,
        metadata: TechniqueMetadata | None = None,
    ) -> TechniqueView:
        """Create a technique; the unique index on short_name arbitrates races."""

        meta = metadata or TechniqueMetadata()
        _validate_short_name(short_name)
        technique_type = _coerce_type(meta.technique_type)
        with Session(self.engine) as session:
            row = Technique(
                short_name=short_name,
                technique_type=technique_type.value,
                full_name=meta.full_name or short_name,
                citation=meta.citation,
                comment=meta.comment,
                owner_email=meta.owner_email,
                workspace_count=0,
                created_at=utc_now(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise Conflict(f"Technique already registered: {short_name!r}") from error
            session.refresh(row)
            logger.info(
                "Registered technique %s (id=%s, type=%s)",
                short_name,
                row.technique_id,
                technique_type.value,
            )
            return _to_technique_view(row)

    def lookup(self, short_name: str) -> TechniqueView:
        with Session(self.engine) as session:
            row = session.exec(
                select(Technique).where(Technique.short_name == short_name),
            ).one_or_none()
            if row is None:
                raise NotFound(f"Technique not found: {short_name!r}")
            return _to_technique_view(row)

    def get(self, technique_id: int) -> TechniqueView:
        with Session(self.engine) as session:
            row = session.get(Technique, technique_id)
            if row is None:
                raise NotFound(f"Technique not found: id={technique_id}")
            return _to_technique_view(row)

    def list_techniques(
        self,
        *,
        technique_type: TechniqueType | None = None,
    ) -> list[TechniqueView]:
        with Session(self.engine) as session:
            query = select(Technique)
            if technique_type is not None:
                query = query.where(Technique.technique_type == technique_type.value)
            rows = session.exec(query.order_by(col(Technique.short_name).asc())).all()
            return [_to_technique_view(row) for row in rows]


def _validate_short_name(short_name: str) -> None:
    if not SHORT_NAME_PATTERN.fullmatch(short_name):
        raise InvalidTechnique(
            f"Invalid technique short name {short_name!r}: "
            "expected 1-32 characters from [A-Za-z0-9_-].",
        )


def _coerce_type(value: TechniqueType | str) -> TechniqueType:
    try:
        return TechniqueType(value)
    except ValueError as error:
        allowed = ", ".join(item.value for item in TechniqueType)
        raise InvalidTechnique(
            f"Invalid technique type {value!r}: expected one of {allowed}.",
        ) from error


def _to_technique_view(row: Technique) -> TechniqueView:
    if row.technique_id is None:
        raise RuntimeError("Technique row has no primary key.")
    return TechniqueView(
        technique_id=row.technique_id,
        short_name=row.short_name,
        technique_type=TechniqueType(row.technique_type),
        full_name=row.full_name,
        citation=row.citation,
        comment=row.comment,
        owner_email=row.owner_email,
        workspace_count=row.workspace_count,
        created_at=to_utc_aware(row.created_at),
    )
