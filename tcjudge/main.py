import logging
import os
from typing import Dict, Optional

from fastapi import BackgroundTasks, FastAPI, Form, HTTPException

from .config import load_settings
from .judge import JudgeSession
from .models import VERDICT_TABLE, CompilationSettings, Problem
from .scratch import ScratchDir
from .storage import problem_to_dict

logger = logging.getLogger(__name__)

app = FastAPI(title="Test Case Judge")

settings = load_settings()
scratch = ScratchDir(settings.cache_dir)

# One judging session per source file
sessions: Dict[str, JudgeSession] = {}
notices: Dict[str, "Notices"] = {}


class Notices:
    """Remembers the last notification so a rejected request can explain
    itself."""

    def __init__(self):
        self.last = ""

    def __call__(self, level: str, message: str):
        logger.log(logging.getLevelName(level.upper()), "[Judge] %s", message)
        self.last = message


@app.on_event("startup")
async def startup():
    scratch.prune()


def _session(src: str) -> JudgeSession:
    src = os.path.abspath(src)
    if src not in sessions:
        notices[src] = Notices()
        sessions[src] = JudgeSession(settings, scratch=scratch,
                                     on_notify=notices[src])
    return sessions[src]


def _open(src: str) -> JudgeSession:
    """Session for ``src`` with its problem loaded, or 404."""
    session = _session(src)
    if session.problem is None and session.load_problem(
            os.path.abspath(src)) is None:
        raise HTTPException(404, "Problem not found")
    return session


def _rejected(src: str):
    return HTTPException(400, notices[os.path.abspath(src)].last
                         or "Request rejected")


def _problem_response(session: JudgeSession) -> dict:
    problem: Problem = session.problem
    data = problem_to_dict(problem)
    data["test_cases"] = [
        dict(data["test_cases"][tc_id], id=tc_id)
        for tc_id in problem.test_case_order
    ]
    data["compilation_message"] = session.compilation_message
    data["running"] = session.running
    return data


# ===== Problem APIs =====

@app.post("/api/problems")
async def create_problem(
    src: str = Form(...),
    name: Optional[str] = Form(None),
    url: Optional[str] = Form(None),
    time_limit: Optional[int] = Form(None),
    memory_limit: Optional[int] = Form(None),
):
    """Create a problem for a source file"""
    session = _session(src)
    if session.create_problem(os.path.abspath(src), name, url, time_limit,
                              memory_limit) is None:
        raise _rejected(src)
    return _problem_response(session)


@app.get("/api/problems")
async def get_problem(src: str):
    """Get a problem with its test cases and their last results"""
    return _problem_response(_open(src))


@app.patch("/api/problems")
async def update_problem(
    src: str = Form(...),
    name: Optional[str] = Form(None),
    url: Optional[str] = Form(None),
    time_limit: Optional[int] = Form(None),
    memory_limit: Optional[int] = Form(None),
    compiler: Optional[str] = Form(None),
    compiler_args: Optional[str] = Form(None),
    checker: Optional[str] = Form(None),
    remove_checker: bool = Form(False),
):
    """Update problem settings, checker included"""
    session = _open(src)
    compilation_settings = None
    if compiler is not None or compiler_args is not None:
        current = session.problem.compilation_settings or CompilationSettings()
        compilation_settings = CompilationSettings(
            compiler=compiler if compiler is not None else current.compiler,
            compiler_args=(compiler_args if compiler_args is not None else
                           current.compiler_args),
            runner=current.runner,
            runner_args=current.runner_args,
        )
    if not session.edit_problem_details(name, url, time_limit, memory_limit,
                                        compilation_settings):
        raise _rejected(src)
    if remove_checker and not session.remove_checker():
        raise _rejected(src)
    if checker and not session.set_checker(os.path.abspath(checker)):
        raise _rejected(src)
    return _problem_response(session)


@app.delete("/api/problems")
async def delete_problem(src: str):
    """Delete a problem"""
    session = _open(src)
    if not session.delete_problem():
        raise _rejected(src)
    return {"success": True}


# ===== Test case APIs =====

@app.post("/api/testcases")
async def add_test_case(
    src: str = Form(...),
    stdin: str = Form(""),
    answer: str = Form(""),
):
    session = _open(src)
    tc_id = session.add_test_case(stdin, answer)
    if tc_id is None:
        raise _rejected(src)
    return {"success": True, "id": tc_id}


@app.patch("/api/testcases/{index}")
async def update_test_case(
    index: int,
    src: str = Form(...),
    stdin: Optional[str] = Form(None),
    answer: Optional[str] = Form(None),
):
    session = _open(src)
    if not session.update_test_case(index, stdin, answer):
        raise _rejected(src)
    return {"success": True}


@app.delete("/api/testcases/{index}")
async def delete_test_case(index: int, src: str):
    session = _open(src)
    if not session.delete_test_case(index):
        raise _rejected(src)
    return {"success": True}


@app.post("/api/testcases/{index}/toggle")
async def toggle_test_case(index: int, src: str = Form(...)):
    """Enable or disable a test case"""
    session = _open(src)
    if not session.toggle_disable(index):
        raise _rejected(src)
    return {"success": True,
            "disabled": session.problem.ordered()[index].disabled}


# ===== Run APIs =====

@app.post("/api/run")
async def run(
    background_tasks: BackgroundTasks,
    src: str = Form(...),
    index: Optional[int] = Form(None),
    force_compile: Optional[bool] = Form(None),
):
    """Judge all enabled test cases, or only the one at ``index``"""
    session = _open(src)
    if session.running:
        raise HTTPException(400, "A run is already in progress")
    if index is not None:
        if session.problem.id_at(index) is None:
            raise HTTPException(400, f"Test case {index} does not exist")
        background_tasks.add_task(session.run_test_case, index, force_compile)
    else:
        background_tasks.add_task(session.run_all, force_compile)
    return {"success": True, "status": "Started"}


@app.post("/api/stop")
async def stop(src: str = Form(...), only_one: bool = Form(False)):
    session = _open(src)
    await session.stop_run(only_one)
    return {"success": True}


# ===== Config APIs =====

@app.get("/api/verdicts")
async def get_verdicts():
    """Get every verdict with its display name and color"""
    return {
        verdict.value: {"name": name, "color": color}
        for verdict, (name, color) in VERDICT_TABLE.items()
    }


@app.get("/api/languages")
async def get_languages():
    return {
        name: {"extensions": cfg["extensions"], "compiler": cfg["compiler"],
               "args": cfg.get("args", "")}
        for name, cfg in settings.languages.items()
    }


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run(app, host="127.0.0.1", port=int(os.getenv("TCJUDGE_PORT", "8000")))
