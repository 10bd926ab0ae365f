from fastapi.testclient import TestClient


def test_health_endpoint(client: TestClient) -> None:
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": "ok"}


def test_root_endpoint(client: TestClient) -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "running"


def test_me_returns_role_of_stored_user(client: TestClient, world) -> None:
    response = client.get("/api/v1/me", headers=world.headers_for(world.pm))

    assert response.status_code == 200
    body = response.json()
    assert body["email"] == "pm@test.local"
    assert body["role"] == "product_manager"


def test_me_creates_unknown_user_as_consultant(client: TestClient) -> None:
    response = client.get(
        "/api/v1/me",
        headers={
            "X-MS-OID": "oid-new",
            "X-MS-EMAIL": "New.Person@Test.Local",
            "X-MS-DISPLAY-NAME": "New Person",
        },
    )

    assert response.status_code == 200
    assert response.json()["email"] == "new.person@test.local"
    assert response.json()["role"] == "consultant"
