from conftest import auth

PROJECT = {
    "title": "Portfolio",
    "description": "Personal site",
    "imageUrl": "https://img.portfolio.dev/cover.png",
    "technologies": ["React", "FastAPI"],
}


def create(client, token, resource, payload):
    r = client.post(f"/api/v1/{resource}", json=payload, headers=auth(token))
    assert r.status_code == 201, r.text
    return r.json()["data"]


def test_create_skill_then_list_includes_id(client, admin_token):
    r = client.post("/api/v1/skills", json={"name": "Go", "category": "backend"}, headers=auth(admin_token))
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    skill_id = body["data"]["id"]

    r = client.get("/api/v1/skills")
    assert r.status_code == 200
    assert r.json()["count"] == 1
    assert skill_id in [s["id"] for s in r.json()["data"]]


def test_create_then_get_returns_payload_with_id_and_timestamps(client, admin_token):
    payload = {
        "title": "Backend developer",
        "company": "Acme",
        "location": "Paris",
        "startDate": "2021-03-01T00:00:00Z",
        "technologies": ["Python", "MongoDB"],
    }
    created = create(client, admin_token, "experiences", payload)

    r = client.get(f"/api/v1/experiences/{created['id']}")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["id"] == created["id"]
    assert data["title"] == "Backend developer"
    assert data["company"] == "Acme"
    assert data["location"] == "Paris"
    assert data["startDate"].startswith("2021-03-01T00:00:00")
    assert data["technologies"] == ["Python", "MongoDB"]
    assert "createdAt" in data and "updatedAt" in data
    assert "endDate" not in data


def test_delete_then_get_is_not_found(client, admin_token):
    created = create(client, admin_token, "educations", {
        "degree": "MSc",
        "institution": "University",
        "startDate": "2015-09-01",
        "endDate": "2017-06-30",
    })
    r = client.delete(f"/api/v1/educations/{created['id']}", headers=auth(admin_token))
    assert r.status_code == 200
    assert r.json() == {"success": True, "data": {}}

    r = client.get(f"/api/v1/educations/{created['id']}")
    assert r.status_code == 404
    assert r.json()["success"] is False

    r = client.delete(f"/api/v1/educations/{created['id']}", headers=auth(admin_token))
    assert r.status_code == 404


def test_update_leaves_absent_fields_alone(client, admin_token):
    created = create(client, admin_token, "skills", {"name": "Python", "level": "Confirmed", "category": "backend"})

    r = client.put(f"/api/v1/skills/{created['id']}", json={"level": "Expert"}, headers=auth(admin_token))
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["level"] == "Expert"
    assert data["name"] == "Python"
    assert data["category"] == "backend"
    assert data["createdAt"] == created["createdAt"]


def test_update_with_null_removes_optional_field(client, admin_token):
    created = create(client, admin_token, "experiences", {
        "title": "Intern",
        "company": "Acme",
        "location": "Lyon",
        "startDate": "2019-01-01",
    })
    r = client.put(f"/api/v1/experiences/{created['id']}", json={"location": None}, headers=auth(admin_token))
    assert r.status_code == 200
    assert "location" not in r.json()["data"]
    assert r.json()["data"]["company"] == "Acme"


def test_required_field_cannot_be_nulled(client, admin_token):
    created = create(client, admin_token, "skills", {"name": "Rust", "category": "backend"})
    r = client.put(f"/api/v1/skills/{created['id']}", json={"name": None}, headers=auth(admin_token))
    assert r.status_code == 422


def test_end_date_before_start_date_is_rejected(client, admin_token):
    r = client.post("/api/v1/educations", json={
        "degree": "BSc",
        "institution": "University",
        "startDate": "2015-09-01",
        "endDate": "2014-06-30",
    }, headers=auth(admin_token))
    assert r.status_code == 422
    assert r.json()["success"] is False
    assert "errors" in r.json()


def test_end_date_checked_against_stored_start_date_on_update(client, admin_token):
    created = create(client, admin_token, "experiences", {
        "title": "Dev",
        "company": "Acme",
        "startDate": "2020-01-01",
    })
    r = client.put(
        f"/api/v1/experiences/{created['id']}", json={"endDate": "2019-01-01"}, headers=auth(admin_token)
    )
    assert r.status_code == 400
    assert r.json()["errors"]


def test_unknown_fields_rejected_but_server_fields_ignored(client, admin_token):
    r = client.post(
        "/api/v1/skills", json={"name": "Go", "category": "backend", "color": "blue"}, headers=auth(admin_token)
    )
    assert r.status_code == 422
    assert "color" in r.json()["errors"]

    r = client.post("/api/v1/skills", json={
        "name": "Go",
        "category": "backend",
        "id": "abc",
        "createdAt": "2000-01-01",
    }, headers=auth(admin_token))
    assert r.status_code == 201
    assert r.json()["data"]["id"] != "abc"
    assert not r.json()["data"]["createdAt"].startswith("2000")


def test_invalid_enum_value_rejected(client, admin_token):
    r = client.post("/api/v1/skills", json={"name": "Go", "category": "cooking"}, headers=auth(admin_token))
    assert r.status_code == 422
    assert "category" in r.json()["errors"]


def test_duplicate_skill_name_is_case_insensitive(client, admin_token):
    create(client, admin_token, "skills", {"name": "Docker", "category": "devops"})
    r = client.post("/api/v1/skills", json={"name": "docker", "category": "devops"}, headers=auth(admin_token))
    assert r.status_code == 400
    assert "name" in r.json()["errors"]


def test_malformed_id_is_not_found(client, admin_token):
    assert client.get("/api/v1/projects/not-an-id").status_code == 404
    r = client.put("/api/v1/skills/123", json={"level": "Expert"}, headers=auth(admin_token))
    assert r.status_code == 404


def test_project_accepts_comma_separated_technologies(client, admin_token):
    data = create(client, admin_token, "projects", dict(PROJECT, technologies="React, Node.js ,"))
    assert data["technologies"] == ["React", "Node.js"]
    assert data["featured"] is False


def test_project_requires_a_technology_and_a_valid_image(client, admin_token):
    r = client.post("/api/v1/projects", json=dict(PROJECT, technologies=[]), headers=auth(admin_token))
    assert r.status_code == 422
    r = client.post("/api/v1/projects", json=dict(PROJECT, imageUrl="ftp://host/x.png"), headers=auth(admin_token))
    assert r.status_code == 422
    data = create(client, admin_token, "projects", dict(PROJECT, imageUrl="/uploads/projects/a.png"))
    assert data["imageUrl"] == "/uploads/projects/a.png"


def test_certification_requires_credential_url(client, admin_token):
    payload = {"title": "AWS SA", "issuer": "Amazon", "date": "2023-05-01"}
    r = client.post("/api/v1/certifications", json=payload, headers=auth(admin_token))
    assert r.status_code == 422
    assert "credentialUrl" in r.json()["errors"]

    payload["credentialUrl"] = "https://aws.amazon.com/verify/123"
    create(client, admin_token, "certifications", payload)


def test_featured_projects_newest_first_and_capped(client, admin_token):
    for i in range(7):
        create(client, admin_token, "projects", dict(PROJECT, title=f"P{i}", featured=True))
    create(client, admin_token, "projects", dict(PROJECT, title="Hidden"))

    r = client.get("/api/v1/projects/featured")
    assert r.status_code == 200
    titles = [p["title"] for p in r.json()["data"]]
    assert len(titles) == 6
    assert "Hidden" not in titles

    r = client.get("/api/v1/projects", params={"featured": "false"})
    assert [p["title"] for p in r.json()["data"]] == ["Hidden"]


def test_skills_filtered_by_category(client, admin_token):
    create(client, admin_token, "skills", {"name": "React", "category": "frontend"})
    create(client, admin_token, "skills", {"name": "Postgres", "category": "database"})

    r = client.get("/api/v1/skills", params={"category": "frontend"})
    assert [s["name"] for s in r.json()["data"]] == ["React"]


def test_mutations_require_a_token(client):
    r = client.post("/api/v1/skills", json={"name": "Go", "category": "backend"})
    assert r.status_code == 401
    assert r.json()["success"] is False


def test_mutations_require_admin_role(client, user_token):
    r = client.post("/api/v1/projects", json=PROJECT, headers=auth(user_token))
    assert r.status_code == 403
    assert r.json()["success"] is False


def test_reads_are_public(client):
    for resource in ("skills", "experiences", "educations", "certifications", "projects"):
        r = client.get(f"/api/v1/{resource}")
        assert r.status_code == 200
        assert r.json() == {"success": True, "count": 0, "data": []}


def test_unknown_route_uses_error_envelope(client):
    r = client.get("/api/v1/nothing-here")
    assert r.status_code == 404
    assert r.json() == {"success": False, "message": "Cannot find /api/v1/nothing-here on this server"}
