"""Append-only scene corpus with gap-free versions."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from fbksd_server.coordinator.errors import InvalidScene
from fbksd_server.coordinator.models import CorpusSnapshot, SceneDescriptor, SceneView
from fbksd_server.storage.common import to_utc_aware, utc_now
from fbksd_server.storage.sqlmodel_models import CorpusVersion, Scene

logger = logging.getLogger(__name__)

SCENE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
_MAX_VERSION_ATTEMPTS = 20


class SceneCorpus:
    """Scene log where every append creates exactly one new version.

    A version row and its scenes are written in one transaction, and scenes
    are never removed, so reading the version first and then every scene up
    to it always yields a consistent snapshot.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def current_version(self) -> int:
        with Session(self.engine) as session:
            return _current_version(session)

    def add_scene(self, descriptor: SceneDescriptor) -> int:
        return self.add_scenes([descriptor])

    def add_scenes(self, descriptors: Sequence[SceneDescriptor]) -> int:
        """Append a batch of scenes as a single new version."""

        if not descriptors:
            raise InvalidScene("At least one scene is required.")
        names: set[str] = set()
        for descriptor in descriptors:
            _validate_descriptor(descriptor)
            if descriptor.name in names:
                raise InvalidScene(f"Duplicate scene in batch: {descriptor.name!r}")
            names.add(descriptor.name)

        for _ in range(_MAX_VERSION_ATTEMPTS):
            with Session(self.engine) as session:
                existing = session.exec(
                    select(Scene.name).where(col(Scene.name).in_(sorted(names))),
                ).all()
                if existing:
                    raise InvalidScene(f"Scene already in corpus: {sorted(existing)[0]!r}")

                version = _current_version(session) + 1
                now = utc_now()
                try:
                    session.add(
                        CorpusVersion(version=version, scene_count=len(descriptors), added_at=now),
                    )
                    session.flush()
                    session.add_all(
                        [
                            Scene(
                                version=version,
                                name=descriptor.name,
                                renderer=descriptor.renderer,
                                path=descriptor.path,
                                reference_image=descriptor.reference_image,
                                citation=descriptor.citation,
                                added_at=now,
                            )
                            for descriptor in descriptors
                        ],
                    )
                    session.commit()
                except IntegrityError:
                    # Either another writer took this version or inserted one of
                    # the names; the next pass tells the two apart.
                    session.rollback()
                    continue
                logger.info(
                    "Corpus advanced to version %s (%s)",
                    version,
                    ", ".join(descriptor.name for descriptor in descriptors),
                )
                return version
        raise RuntimeError("Could not allocate a corpus version after repeated conflicts.")

    def scenes_added_since(self, version: int) -> list[SceneView]:
        """Scenes appended after ``version``, in version order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Scene)
                .where(col(Scene.version) > version)
                .order_by(col(Scene.version).asc(), col(Scene.scene_id).asc()),
            ).all()
            return [_to_scene_view(row) for row in rows]

    def scenes_at(self, version: int) -> list[SceneView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Scene)
                .where(col(Scene.version) <= version)
                .order_by(col(Scene.version).asc(), col(Scene.scene_id).asc()),
            ).all()
            return [_to_scene_view(row) for row in rows]

    def snapshot(self) -> CorpusSnapshot:
        with Session(self.engine) as session:
            version = _current_version(session)
            rows = session.exec(
                select(Scene)
                .where(col(Scene.version) <= version)
                .order_by(col(Scene.version).asc(), col(Scene.scene_id).asc()),
            ).all()
            return CorpusSnapshot(version=version, scenes=[_to_scene_view(row) for row in rows])


def _current_version(session: Session) -> int:
    value = session.exec(select(func.max(CorpusVersion.version))).one()
    return int(value or 0)


def _validate_descriptor(descriptor: SceneDescriptor) -> None:
    if not SCENE_NAME_PATTERN.fullmatch(descriptor.name or ""):
        raise InvalidScene(
            f"Invalid scene name {descriptor.name!r}: "
            "expected 1-64 characters from [A-Za-z0-9_.-].",
        )
    if not descriptor.renderer.strip():
        raise InvalidScene(f"Scene {descriptor.name!r} has no renderer.")
    if not descriptor.path.strip():
        raise InvalidScene(f"Scene {descriptor.name!r} has no path.")


def _to_scene_view(row: Scene) -> SceneView:
    return SceneView(
        name=row.name,
        renderer=row.renderer,
        path=row.path,
        reference_image=row.reference_image,
        citation=row.citation,
        version=row.version,
        added_at=to_utc_aware(row.added_at),
    )
