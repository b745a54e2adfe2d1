import os
import sys
import textwrap

import pytest

from tcjudge.config import JudgeSettings
from tcjudge.judge import JudgeSession
from tcjudge.runner import ProcessRunner
from tcjudge.scratch import ScratchDir
from tcjudge.storage import ProblemStore


@pytest.fixture
def settings(tmp_path):
    return JudgeSettings(
        cache_dir=tmp_path / "cache",
        time_addition_ms=200,
        checker_timeout_ms=5000,
    )


@pytest.fixture
def scratch(settings):
    return ScratchDir(settings.cache_dir)


@pytest.fixture
def runner(settings, scratch):
    return ProcessRunner(settings, scratch)


@pytest.fixture
def make_script(tmp_path):
    """Write an executable python script and return its path."""
    script_dir = tmp_path / "scripts"
    script_dir.mkdir()

    def make(name, body):
        path = script_dir / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        os.chmod(path, 0o755)
        return str(path)

    return make


@pytest.fixture
def make_source(tmp_path):
    """Write a solution source file into the workspace."""
    work_dir = tmp_path / "work"
    work_dir.mkdir()

    def make(body, name="solution.py"):
        path = work_dir / name
        path.write_text(textwrap.dedent(body))
        return str(path)

    return make


class Recorder:

    def __init__(self):
        self.changes = []
        self.notices = []

    def on_change(self, problem):
        verdicts = None
        if problem is not None:
            verdicts = [
                tc.last_result.verdict if tc.last_result else None
                for tc in problem.ordered()
            ]
        self.changes.append(verdicts)

    def on_notify(self, level, message):
        self.notices.append((level, message))


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_session(settings, scratch, make_source, recorder):
    """Session with a freshly created problem for the given solution."""

    def make(body, cases=(), name="solution.py", **problem_args):
        src = make_source(body, name=name)
        session = JudgeSession(settings, ProblemStore(settings), scratch,
                               on_change=recorder.on_change,
                               on_notify=recorder.on_notify)
        assert session.create_problem(src, **problem_args) is not None
        for stdin, answer in cases:
            session.add_test_case(stdin, answer)
        return session

    return make
