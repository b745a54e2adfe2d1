import gzip
import os
import shutil

import pytest

from tcjudge.models import (CompilationSettings, FileIO, FileWithHash,
                            InlineIO, Problem, RunResult, TestCase, Verdict)
from tcjudge.storage import (ProblemStore, StorageError, deserialize,
                             serialize)


def sample_problem(src_path, data_path):
    problem = Problem(
        name="A + B",
        source=FileWithHash(src_path, "abc123"),
        url="https://example.com/problem/1",
        time_limit=2000,
        memory_limit=512,
        checker=FileWithHash(os.path.join(os.path.dirname(src_path),
                                          "checker.py")),
        compilation_settings=CompilationSettings(compiler_args="-O0"),
    )
    problem.add_test_case(TestCase(
        stdin=InlineIO("1 2"),
        answer=InlineIO("3"),
        last_result=RunResult(Verdict.WA, 12.5, 3.25, InlineIO("4"),
                              InlineIO(""), "wrong"),
        expanded=True,
    ))
    problem.add_test_case(TestCase(stdin=FileIO(data_path),
                                   answer=InlineIO("ünïcode"),
                                   disabled=True))
    return problem


def test_round_trip(tmp_path):
    problem = sample_problem(str(tmp_path / "a.py"), str(tmp_path / "1.in"))
    assert deserialize(serialize(problem)) == problem


def test_round_trip_keeps_order(tmp_path):
    problem = sample_problem(str(tmp_path / "a.py"), str(tmp_path / "1.in"))
    problem.test_case_order.reverse()
    restored = deserialize(serialize(problem))
    assert restored.test_case_order == problem.test_case_order


def test_corrupt_blob():
    with pytest.raises(StorageError):
        deserialize(b"not gzip at all")
    with pytest.raises(StorageError):
        deserialize(gzip.compress(b'{"name": "missing fields"}'))
    with pytest.raises(StorageError):
        deserialize(gzip.compress(b"[1, 2]"))


def test_store_save_and_load(settings, tmp_path):
    store = ProblemStore(settings)
    src = tmp_path / "a.py"
    src.write_text("")
    problem = sample_problem(str(src), str(tmp_path / "1.in"))
    store.save(problem)
    assert store.path_for(str(src)) == tmp_path / ".tcjudge" / "a.py.bin"
    assert store.load(str(src)) == problem
    store.delete(problem)
    assert store.load(str(src)) is None


def test_load_broken_file_returns_none(settings, tmp_path):
    store = ProblemStore(settings)
    path = store.path_for(str(tmp_path / "a.py"))
    path.parent.mkdir()
    path.write_bytes(b"garbage")
    assert store.load(str(tmp_path / "a.py")) is None


def test_load_relocates_moved_workspace(settings, tmp_path):
    old_dir = tmp_path / "old"
    old_dir.mkdir()
    (old_dir / "data").mkdir()
    (old_dir / "data" / "1.in").write_text("1 2")
    (old_dir / "checker.py").write_text("")
    (old_dir / "a.py").write_text("")
    store = ProblemStore(settings)
    store.save(sample_problem(str(old_dir / "a.py"),
                              str(old_dir / "data" / "1.in")))

    new_dir = tmp_path / "new"
    shutil.move(str(old_dir), str(new_dir))
    problem = store.load(str(new_dir / "a.py"))

    assert problem.source.path == str(new_dir / "a.py")
    assert problem.checker.path == str(new_dir / "checker.py")
    stdin = problem.ordered()[1].stdin
    assert stdin == FileIO(str(new_dir / "data" / "1.in"))
