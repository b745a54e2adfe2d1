import pytest
from fastapi.testclient import TestClient

from tcjudge import main

SUM = """\
import sys
print(sum(int(x) for x in sys.stdin.read().split()))
"""


@pytest.fixture
def client(settings, scratch, monkeypatch):
    monkeypatch.setattr(main, "settings", settings)
    monkeypatch.setattr(main, "scratch", scratch)
    monkeypatch.setattr(main, "sessions", {})
    monkeypatch.setattr(main, "notices", {})
    with TestClient(main.app) as client:
        yield client


@pytest.fixture
def src(make_source):
    return make_source(SUM)


def create(client, src, **fields):
    response = client.post("/api/problems", data=dict(src=src, **fields))
    assert response.status_code == 200, response.text
    return response.json()


def test_create_and_get_problem(client, src):
    data = create(client, src, name="Sum", time_limit="2000")
    assert data["name"] == "Sum"
    assert data["time_limit"] == 2000
    assert data["test_cases"] == []

    response = client.get("/api/problems", params={"src": src})
    assert response.status_code == 200
    assert response.json()["name"] == "Sum"


def test_duplicate_problem_rejected(client, src):
    create(client, src)
    response = client.post("/api/problems", data={"src": src})
    assert response.status_code == 400
    assert "already exists" in response.json()["detail"]


def test_unknown_problem(client, tmp_path):
    response = client.get("/api/problems",
                          params={"src": str(tmp_path / "nothing.py")})
    assert response.status_code == 404


def test_run_batch(client, src):
    create(client, src)
    for stdin, answer in (("1 2", "3"), ("2 2", "5")):
        response = client.post("/api/testcases",
                               data={"src": src, "stdin": stdin,
                                     "answer": answer})
        assert response.status_code == 200

    response = client.post("/api/run", data={"src": src})
    assert response.status_code == 200

    data = client.get("/api/problems", params={"src": src}).json()
    verdicts = [tc["last_result"]["verdict"] for tc in data["test_cases"]]
    assert verdicts == ["AC", "WA"]
    assert data["running"] is False


def test_run_single_case(client, src):
    create(client, src)
    client.post("/api/testcases", data={"src": src, "stdin": "1", "answer": "1"})
    client.post("/api/testcases", data={"src": src, "stdin": "2", "answer": "2"})

    response = client.post("/api/run", data={"src": src, "index": "1"})
    assert response.status_code == 200
    cases = client.get("/api/problems", params={"src": src}).json()["test_cases"]
    assert cases[0]["last_result"] is None
    assert cases[1]["last_result"]["verdict"] == "AC"

    response = client.post("/api/run", data={"src": src, "index": "5"})
    assert response.status_code == 400


def test_edit_test_cases(client, src):
    create(client, src)
    client.post("/api/testcases", data={"src": src, "stdin": "1", "answer": "1"})

    response = client.patch("/api/testcases/0",
                            data={"src": src, "answer": "2"})
    assert response.status_code == 200
    response = client.post("/api/testcases/0/toggle", data={"src": src})
    assert response.json()["disabled"] is True

    case = client.get("/api/problems",
                      params={"src": src}).json()["test_cases"][0]
    assert case["answer"] == {"inline": "2"}
    assert case["disabled"] is True

    response = client.delete("/api/testcases/3", params={"src": src})
    assert response.status_code == 400
    response = client.delete("/api/testcases/0", params={"src": src})
    assert response.status_code == 200


def test_update_problem(client, src, make_script):
    create(client, src)
    checker = make_script("checker", "import sys\nsys.exit(0)\n")
    response = client.patch("/api/problems",
                            data={"src": src, "memory_limit": "64",
                                  "compiler_args": "-B", "checker": checker})
    assert response.status_code == 200
    data = response.json()
    assert data["memory_limit"] == 64
    assert data["compilation_settings"]["compiler_args"] == "-B"
    assert data["checker"]["path"] == checker

    response = client.patch("/api/problems",
                            data={"src": src, "remove_checker": "true"})
    assert response.json()["checker"] is None

    response = client.patch("/api/problems",
                            data={"src": src, "time_limit": "-1"})
    assert response.status_code == 400


def test_delete_problem(client, src):
    create(client, src)
    assert client.delete("/api/problems", params={"src": src}).status_code == 200
    response = client.get("/api/problems", params={"src": src})
    assert response.status_code == 404


def test_stop_without_run(client, src):
    create(client, src)
    response = client.post("/api/stop", data={"src": src})
    assert response.status_code == 200


def test_verdicts(client):
    data = client.get("/api/verdicts").json()
    assert data["AC"] == {"name": "Accepted", "color": "#49cd32"}
    assert len(data) == 20


def test_languages(client):
    data = client.get("/api/languages").json()
    assert ".py" in data["python"]["extensions"]
