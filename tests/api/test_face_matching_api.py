"""Tests for the face matching HTTP API."""
import base64
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from facematch.core.container import ServiceContainer
from facematch.infrastructure.database.session import create_session_factory
from facematch.main import create_app
from helpers import LOOKALIKE, REFERENCE, STRANGER, FaceSpec

API = "/api/v1"


@pytest.fixture
def services(tmp_path, backend, image_source):
    return ServiceContainer(
        backend=backend,
        image_source=image_source,
        session_factory=create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", echo=False),
    )


@pytest.fixture
def client(services):
    """Test client serving a container with synthetic face analysis."""
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def person(client, world):
    photo = base64.b64encode(world.render_png([FaceSpec(REFERENCE)])).decode("ascii")
    response = client.post(f"{API}/people", json={
        "name": "Ada",
        "primary_photo": photo,
        "primary_photo_date": "2019-05-01T12:00:00Z",
    })
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def searched(client, image_source, person):
    """A person whose search has attributed one library face."""
    when = datetime(2019, 5, 2, tzinfo=timezone.utc)
    image_source.add("album/img-1", when, [FaceSpec(LOOKALIKE)])
    image_source.add("album/img-2", when, [FaceSpec(STRANGER)])
    response = client.post(f"{API}/people/{person['person_id']}/search")
    assert response.status_code == 200
    return response.json()


def suggested_face(client):
    faces = client.get(f"{API}/images/album/img-1/faces").json()["faces"]
    assert len(faces) == 1
    return faces[0]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "background_searches": 0}


class TestPeople:

    def test_create_person(self, person):
        assert person["name"] == "Ada"
        assert person["has_primary_photo"] is True

    def test_create_person_without_name(self, client):
        assert client.post(f"{API}/people", json={"name": ""}).status_code == 422


class TestSearch:

    def test_search_attributes_matching_face(self, searched, person):
        assert searched == {
            "person_id": person["person_id"],
            "matched_count": 1,
            "continuing_in_background": False,
        }

    def test_repeat_search_finds_nothing_new(self, client, searched, person, backend):
        calls = backend.detect_calls
        response = client.post(f"{API}/people/{person['person_id']}/search")
        assert response.json()["matched_count"] == 0
        assert backend.detect_calls == calls

    def test_search_admitted_afterwards_is_not_reported_as_continuation(
        self, client, services, image_source, person, monkeypatch,
    ):
        image_source.add("album/img-1", datetime(2019, 5, 2, tzinfo=timezone.utc), [FaceSpec(LOOKALIKE)])
        orchestrator = services.match_orchestrator
        real_start_search = orchestrator.start_search

        async def start_search(person_id):
            matched = await real_start_search(person_id)
            orchestrator.locks.acquire(person_id)
            return matched

        monkeypatch.setattr(orchestrator, "start_search", start_search)

        response = client.post(f"{API}/people/{person['person_id']}/search")

        assert response.json()["continuing_in_background"] is False

    def test_unknown_person(self, client):
        assert client.post(f"{API}/people/{uuid4()}/search").status_code == 404

    def test_person_without_reference(self, client):
        created = client.post(f"{API}/people", json={"name": "Nobody"}).json()
        response = client.post(f"{API}/people/{created['person_id']}/search")
        assert response.status_code == 422

    def test_invalid_person_id(self, client):
        assert client.post(f"{API}/people/not-a-uuid/search").status_code == 422


class TestImages:

    def test_analysis_status(self, client, searched):
        assert client.get(f"{API}/images/album/img-2/analysis").json() == {
            "image_id": "album/img-2",
            "analyzed": True,
        }
        assert client.get(f"{API}/images/album/unknown/analysis").json()["analyzed"] is False

    def test_stored_faces(self, client, searched, person):
        face = suggested_face(client)
        assert face["owner_id"] == person["person_id"]
        assert face["is_verified"] is False
        assert face["thumbnail"] is None
        assert face["bounding_box"] == pytest.approx({"x": 0.3, "y": 0.3, "width": 0.4, "height": 0.4})

    def test_stored_faces_with_thumbnails(self, client, searched):
        faces = client.get(f"{API}/images/album/img-1/faces", params={"include_thumbnails": True}).json()["faces"]
        assert base64.b64decode(faces[0]["thumbnail"]).startswith(b"\xff\xd8")


class TestReview:

    def test_confirm_and_centroid(self, client, searched, person):
        face = suggested_face(client)

        confirmed = client.post(f"{API}/people/{person['person_id']}/faces/{face['embedding_id']}/confirm")
        assert confirmed.status_code == 200
        assert confirmed.json()["is_verified"] is True

        centroid = client.post(f"{API}/people/{person['person_id']}/centroid")
        assert centroid.status_code == 200
        body = centroid.json()
        assert body["face_count"] == 2
        assert len(body["centroid"]) == len(REFERENCE)

    def test_confirm_unknown_face(self, client, person):
        response = client.post(f"{API}/people/{person['person_id']}/faces/{uuid4()}/confirm")
        assert response.status_code == 404

    def test_unassign(self, client, searched, person):
        face = suggested_face(client)

        response = client.delete(f"{API}/people/{person['person_id']}/faces/{face['embedding_id']}")

        assert response.status_code == 200
        assert response.json()["owner_id"] is None
        assert suggested_face(client)["owner_id"] is None

    def test_centroid_without_verified_faces(self, client):
        created = client.post(f"{API}/people", json={"name": "Nobody"}).json()
        assert client.post(f"{API}/people/{created['person_id']}/centroid").status_code == 404


class TestSimilar:

    def test_similar_faces(self, client, searched):
        face = suggested_face(client)

        response = client.get(f"{API}/embeddings/{face['embedding_id']}/similar")

        assert response.status_code == 200
        matches = response.json()["matches"]
        assert [match["face"]["image_id"].startswith("person-") for match in matches] == [True]
        assert matches[0]["similarity"] == pytest.approx(0.995, abs=1e-3)

    def test_threshold_and_top_k(self, client, searched):
        face = suggested_face(client)
        url = f"{API}/embeddings/{face['embedding_id']}/similar"

        assert client.get(url, params={"threshold": 0.999}).json()["matches"] == []
        assert client.get(url, params={"top_k": 0}).status_code == 422

    def test_unknown_embedding(self, client):
        assert client.get(f"{API}/embeddings/{uuid4()}/similar").status_code == 404


class TestDeletion:

    def test_delete_unassigned_then_everything(self, client, searched, person):
        unassigned = client.delete(f"{API}/faces", params={"unassigned_only": True})
        assert unassigned.json() == {"deleted": 1}
        assert client.get(f"{API}/images/album/img-2/analysis").json()["analyzed"] is False

        everything = client.delete(f"{API}/faces")
        assert everything.json() == {"deleted": 2}

    def test_delete_person_faces(self, client, searched, person):
        response = client.delete(f"{API}/people/{person['person_id']}/faces")
        assert response.json() == {"deleted": 2}
        assert client.get(f"{API}/images/album/img-1/analysis").json()["analyzed"] is False
