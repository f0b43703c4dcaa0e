# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import httpx
import pytest
from starlette.testclient import TestClient

from inkfed.server.app import create_app

AUTH = {"Authorization": "Bearer s3cret"}
CAROL = "https://example.org/users/carol"


@pytest.mark.parametrize("path", ["/health", "/_functional/health"])
def test_health(client: TestClient, path):
    response = client.get(path)

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_metrics(client: TestClient):
    client.get("/users/alice")
    response = client.get("/_functional/metrics")

    assert response.status_code == 200
    assert "http_requests_latency_seconds" in response.text
    assert "federation_deliveries" in response.text
    assert "federation_delivery_queue" in response.text
    assert 'endpoint="ActorEndpoint"' in response.text


def test_lookup_requires_token(client: TestClient):
    assert client.get("/_functional/lookup?handle=carol@example.org").status_code == 401
    assert (
        client.get(
            "/_functional/lookup?handle=carol@example.org",
            headers={"Authorization": "Bearer wrong"},
        ).status_code
        == 401
    )


def test_internal_api_disabled(settings, store, remote):
    settings.set("server.internal_token", "")
    app = create_app(settings, transport=httpx.MockTransport(remote.handler))

    with TestClient(app, base_url="https://inkwell.test") as client:
        response = client.get("/_functional/lookup?handle=carol@example.org", headers=AUTH)

    assert response.status_code == 403


def test_lookup(client: TestClient):
    response = client.get("/_functional/lookup?handle=carol@example.org", headers=AUTH)

    assert response.status_code == 200
    summary = response.json()
    assert summary["id"] == CAROL
    assert summary["handle"] == "carol@example.org"
    assert summary["degraded"] is False


def test_lookup_errors(client: TestClient, remote):
    assert client.get("/_functional/lookup", headers=AUTH).status_code == 400
    assert (
        client.get("/_functional/lookup?handle=nobody@example.org", headers=AUTH).status_code
        == 404
    )

    remote.statuses[CAROL] = 500
    assert (
        client.get("/_functional/lookup?handle=carol@example.org", headers=AUTH).status_code
        == 502
    )


def test_follow(client: TestClient, remote, store):
    response = client.post(
        "/_functional/follow",
        json={"username": "alice", "handle": "carol@example.org"},
        headers=AUTH,
    )

    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "pending"
    assert data["actor"]["id"] == CAROL
    assert store.get_relationship("https://inkwell.test/users/alice", CAROL).status == "pending"
    (task,) = store.queued_deliveries()
    assert task.payload["type"] == "Follow"


def test_follow_bad_request(client: TestClient):
    response = client.post("/_functional/follow", json={"username": "alice"}, headers=AUTH)
    assert response.status_code == 400
    assert (
        client.post(
            "/_functional/follow",
            json={"username": "nobody", "handle": "carol@example.org"},
            headers=AUTH,
        ).status_code
        == 404
    )
