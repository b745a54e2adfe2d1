import gzip
import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from .config import JudgeSettings
from .models import (CompilationSettings, FileIO, FileWithHash, IOValue,
                     Problem, RunResult, TestCase, Verdict, io_from_dict,
                     io_to_dict)

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class StorageError(Exception):
    """Raised when a persisted problem cannot be read back."""


def _result_to_dict(result: RunResult) -> dict:
    return {
        "verdict": result.verdict.value,
        "elapsed_ms": result.elapsed_ms,
        "memory_mb": result.memory_mb,
        "stdout": io_to_dict(result.stdout),
        "stderr": io_to_dict(result.stderr),
        "message": result.message,
    }


def _result_from_dict(data: dict) -> RunResult:
    return RunResult(
        verdict=Verdict(data["verdict"]),
        elapsed_ms=data.get("elapsed_ms"),
        memory_mb=data.get("memory_mb"),
        stdout=io_from_dict(data["stdout"]),
        stderr=io_from_dict(data["stderr"]),
        message=data.get("message", ""),
    )


def problem_to_dict(problem: Problem) -> dict:
    return {
        "version": FORMAT_VERSION,
        "name": problem.name,
        "url": problem.url,
        "time_limit": problem.time_limit,
        "memory_limit": problem.memory_limit,
        "source": asdict(problem.source),
        "checker": asdict(problem.checker) if problem.checker else None,
        "test_cases": {
            tc_id: {
                "stdin": io_to_dict(tc.stdin),
                "answer": io_to_dict(tc.answer),
                "last_result": (_result_to_dict(tc.last_result)
                                if tc.last_result else None),
                "disabled": tc.disabled,
                "expanded": tc.expanded,
            }
            for tc_id, tc in problem.test_cases.items()
        },
        "test_case_order": list(problem.test_case_order),
        "compilation_settings": (asdict(problem.compilation_settings)
                                 if problem.compilation_settings else None),
    }


def problem_from_dict(data: dict) -> Problem:
    try:
        test_cases = {
            tc_id: TestCase(
                stdin=io_from_dict(tc["stdin"]),
                answer=io_from_dict(tc["answer"]),
                last_result=(_result_from_dict(tc["last_result"])
                             if tc.get("last_result") else None),
                disabled=tc.get("disabled", False),
                expanded=tc.get("expanded", False),
            )
            for tc_id, tc in data.get("test_cases", {}).items()
        }
        order = [tc_id for tc_id in data.get("test_case_order", [])
                 if tc_id in test_cases]
        return Problem(
            name=data["name"],
            url=data.get("url"),
            time_limit=data["time_limit"],
            memory_limit=data["memory_limit"],
            source=FileWithHash(**data["source"]),
            checker=(FileWithHash(**data["checker"])
                     if data.get("checker") else None),
            test_cases=test_cases,
            test_case_order=order,
            compilation_settings=(CompilationSettings(
                **data["compilation_settings"])
                                  if data.get("compilation_settings") else
                                  None),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise StorageError(f"malformed problem data: {e}") from e


def serialize(problem: Problem) -> bytes:
    return gzip.compress(
        json.dumps(problem_to_dict(problem), ensure_ascii=False).encode())


def deserialize(blob: bytes) -> Problem:
    try:
        data = json.loads(gzip.decompress(blob).decode())
    except (OSError, EOFError, ValueError) as e:
        raise StorageError(f"cannot decode problem data: {e}") from e
    if not isinstance(data, dict):
        raise StorageError("problem data is not an object")
    return problem_from_dict(data)


class ProblemStore:
    """Keeps each problem as a compressed blob next to its source file."""

    def __init__(self, settings: JudgeSettings):
        self.settings = settings

    def path_for(self, src_path: str) -> Path:
        src = Path(src_path)
        return src.parent / self.settings.problem_folder / f"{src.name}.bin"

    def exists(self, src_path: str) -> bool:
        return self.path_for(src_path).exists()

    def load(self, src_path: str) -> Optional[Problem]:
        """Read the problem for ``src_path``; None when absent or broken."""
        bin_path = self.path_for(src_path)
        try:
            blob = bin_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("[Storage] Cannot read %s: %s", bin_path, e)
            return None
        try:
            problem = deserialize(blob)
        except StorageError as e:
            logger.warning("[Storage] Ignoring broken problem file %s: %s",
                           bin_path, e)
            return None
        if problem.source.path != src_path:
            self._relocate(problem, src_path)
        logger.info("[Storage] Problem %s loaded", src_path)
        return problem

    def save(self, problem: Problem):
        bin_path = self.path_for(problem.source.path)
        bin_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = bin_path.with_suffix(".tmp")
        tmp_path.write_bytes(serialize(problem))
        tmp_path.replace(bin_path)
        logger.debug("[Storage] Saved problem %s", problem.source.path)

    def delete(self, problem: Problem):
        self.path_for(problem.source.path).unlink(missing_ok=True)
        logger.info("[Storage] Deleted problem %s", problem.source.path)

    @staticmethod
    def _relocate(problem: Problem, src_path: str):
        # The workspace moved: follow files that moved along with the source
        old_dir = os.path.dirname(problem.source.path)
        new_dir = os.path.dirname(src_path)

        def fix(path: str) -> str:
            if os.path.exists(path):
                return path
            candidate = os.path.join(new_dir, os.path.relpath(path, old_dir))
            if os.path.exists(candidate):
                logger.debug("[Storage] Fixed path %s to %s", path, candidate)
                return candidate
            return path

        def fix_io(io: IOValue) -> IOValue:
            return FileIO(fix(io.path)) if isinstance(io, FileIO) else io

        for tc in problem.test_cases.values():
            tc.stdin = fix_io(tc.stdin)
            tc.answer = fix_io(tc.answer)
        if problem.checker:
            problem.checker.path = fix(problem.checker.path)
        problem.source.path = src_path
