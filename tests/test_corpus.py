from __future__ import annotations

import threading

import allure
import pytest

from fbksd_server.coordinator.errors import InvalidScene
from fbksd_server.coordinator.models import SceneDescriptor
from fbksd_server.coordinator.services import Coordinator

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Scene Corpus"),
]


def _scene(name: str, renderer: str = "pbrt-v3") -> SceneDescriptor:
    return SceneDescriptor(name=name, renderer=renderer, path=f"scenes/{name}.pbrt")


def test_empty_corpus_is_version_zero(coordinator: Coordinator) -> None:
    snapshot = coordinator.corpus.snapshot()

    assert snapshot.version == 0
    assert snapshot.scenes == []


def test_each_batch_creates_exactly_one_version(coordinator: Coordinator) -> None:
    corpus = coordinator.corpus

    assert corpus.add_scenes([_scene("cornell"), _scene("sponza")]) == 1
    assert corpus.add_scene(_scene("kitchen", renderer="mitsuba")) == 2

    snapshot = corpus.snapshot()
    assert snapshot.version == 2
    assert snapshot.scene_names == ("cornell", "sponza", "kitchen")
    assert [scene.version for scene in snapshot.scenes] == [1, 1, 2]
    assert snapshot.scenes[2].renderer == "mitsuba"


def test_scenes_at_returns_the_historical_set(coordinator: Coordinator) -> None:
    corpus = coordinator.corpus
    corpus.add_scene(_scene("cornell"))
    corpus.add_scene(_scene("sponza"))

    assert [scene.name for scene in corpus.scenes_at(1)] == ["cornell"]
    assert [scene.name for scene in corpus.scenes_at(0)] == []


def test_scenes_added_since_returns_only_newer_scenes(coordinator: Coordinator) -> None:
    corpus = coordinator.corpus
    corpus.add_scene(_scene("cornell"))
    corpus.add_scenes([_scene("sponza"), _scene("kitchen")])

    assert [scene.name for scene in corpus.scenes_added_since(1)] == ["sponza", "kitchen"]
    assert corpus.scenes_added_since(2) == []


def test_duplicate_scene_is_rejected_without_a_new_version(coordinator: Coordinator) -> None:
    corpus = coordinator.corpus
    corpus.add_scene(_scene("cornell"))

    with pytest.raises(InvalidScene, match="already in corpus"):
        corpus.add_scenes([_scene("sponza"), _scene("cornell")])

    assert corpus.current_version() == 1
    assert corpus.snapshot().scene_names == ("cornell",)


def test_duplicate_within_a_batch_is_rejected(coordinator: Coordinator) -> None:
    with pytest.raises(InvalidScene, match="Duplicate"):
        coordinator.corpus.add_scenes([_scene("cornell"), _scene("cornell")])

    assert coordinator.corpus.current_version() == 0


@pytest.mark.parametrize(
    "descriptor",
    [
        SceneDescriptor(name="", renderer="pbrt-v3", path="scenes/x.pbrt"),
        SceneDescriptor(name="has space", renderer="pbrt-v3", path="scenes/x.pbrt"),
        SceneDescriptor(name="cornell", renderer=" ", path="scenes/x.pbrt"),
        SceneDescriptor(name="cornell", renderer="pbrt-v3", path=""),
    ],
)
def test_malformed_scene_is_rejected(
    coordinator: Coordinator,
    descriptor: SceneDescriptor,
) -> None:
    with pytest.raises(InvalidScene):
        coordinator.corpus.add_scene(descriptor)


def test_empty_batch_is_rejected(coordinator: Coordinator) -> None:
    with pytest.raises(InvalidScene):
        coordinator.corpus.add_scenes([])


def test_concurrent_appends_produce_gap_free_versions(coordinator: Coordinator) -> None:
    corpus = coordinator.corpus
    versions: list[int] = []
    lock = threading.Lock()
    errors: list[Exception] = []

    def _append(index: int) -> None:
        try:
            version = corpus.add_scene(_scene(f"scene-{index}"))
        except Exception as error:  # noqa: BLE001
            errors.append(error)
            return
        with lock:
            versions.append(version)

    threads = [threading.Thread(target=_append, args=(index,)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(versions) == [1, 2, 3, 4, 5, 6]
    assert corpus.current_version() == 6
