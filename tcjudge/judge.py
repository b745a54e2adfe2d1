import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from .checker import Checker
from .comparator import compare
from .compiler import Compiler
from .config import JudgeSettings
from .models import (CompilationSettings, FileIO, FileWithHash, InlineIO,
                     IOValue, Problem, RunResult, TestCase, Verdict, read_io)
from .runner import CancelToken, ProcessRunner
from .scratch import ScratchDir
from .storage import ProblemStore

logger = logging.getLogger(__name__)

# Cancel reasons
STOP_ALL = "stop_all"
STOP_ONE = "only_one"

IO_FIELDS = ("stdin", "answer")

ChangeCallback = Callable[[Optional[Problem]], None]
NotifyCallback = Callable[[str, str], None]
IOLike = Union[str, InlineIO, FileIO]


def _log_notify(level: str, message: str):
    logger.log(logging.getLevelName(level.upper()), "[Judge] %s", message)


def as_io(value: IOLike) -> IOValue:
    if isinstance(value, str):
        return InlineIO(value)
    if isinstance(value, (InlineIO, FileIO)):
        return value
    raise TypeError(f"not an IO value: {value!r}")


class JudgeSession:
    """Judging context for one problem at a time.

    Every mutation of the problem is saved and reported through
    ``on_change`` right away, so observers see each case move through
    CP, CPD, JG, JGD and CMP in order. Requests that cannot be honoured
    (no problem, bad index, a run already going) are reported through
    ``on_notify`` and leave the problem untouched.
    """

    def __init__(self, settings: Optional[JudgeSettings] = None,
                 store: Optional[ProblemStore] = None,
                 scratch: Optional[ScratchDir] = None,
                 on_change: Optional[ChangeCallback] = None,
                 on_notify: Optional[NotifyCallback] = None):
        self.settings = settings or JudgeSettings()
        self.store = store or ProblemStore(self.settings)
        self.scratch = scratch or ScratchDir(self.settings.cache_dir)
        self.runner = ProcessRunner(self.settings, self.scratch)
        self.compiler = Compiler(self.settings, self.scratch, self.runner)
        self.checker = Checker(self.settings, self.scratch, self.runner)
        self.on_change = on_change
        self.on_notify = on_notify or _log_notify

        self.problem: Optional[Problem] = None
        self.compilation_message = ""
        self._token: Optional[CancelToken] = None

    @property
    def running(self) -> bool:
        return self._token is not None

    # ---- bookkeeping ----

    def _notify(self, level: str, message: str):
        self.on_notify(level, message)

    def _refresh(self) -> bool:
        ok = True
        if self.problem is not None:
            try:
                self.store.save(self.problem)
            except OSError as e:
                logger.error("[Judge] Failed to save problem: %s", e)
                self._notify("error", f"Failed to save problem: {e}")
                ok = False
        if self.on_change is not None:
            self.on_change(self.problem)
        return ok

    def _require_problem(self) -> bool:
        if self.problem is None:
            self._notify("warning", "No problem is open")
            return False
        return True

    def _require_idle(self) -> bool:
        if not self._require_problem():
            return False
        if self.running:
            self._notify("warning", "A run is already in progress")
            return False
        return True

    def _test_case(self, index: int) -> Optional[Tuple[str, TestCase]]:
        tc_id = self.problem.id_at(index)
        if tc_id is None:
            self._notify("warning", f"Test case {index} does not exist")
            return None
        return tc_id, self.problem.test_cases[tc_id]

    # ---- problem operations ----

    def create_problem(self, src_path: str, name: Optional[str] = None,
                       url: Optional[str] = None,
                       time_limit: Optional[int] = None,
                       memory_limit: Optional[int] = None
                       ) -> Optional[Problem]:
        if self.running:
            self._notify("warning", "A run is already in progress")
            return None
        if not Path(src_path).is_file():
            self._notify("warning", f"Source file not found: {src_path}")
            return None
        if self.store.exists(src_path):
            self._notify("warning", f"Problem already exists for {src_path}")
            return None
        self.problem = Problem(
            name=name or Path(src_path).stem,
            source=FileWithHash(src_path),
            url=url,
            time_limit=time_limit or self.settings.default_time_limit,
            memory_limit=memory_limit or self.settings.default_memory_limit,
        )
        self.compilation_message = ""
        logger.info("[Judge] Created problem %s", src_path)
        self._refresh()
        return self.problem

    def load_problem(self, src_path: str) -> Optional[Problem]:
        if self.running:
            self._notify("warning", "A run is already in progress")
            return None
        problem = self.store.load(src_path)
        if problem is None:
            self._notify("warning", f"No problem found for {src_path}")
            return None
        self.problem = problem
        self.compilation_message = ""
        if self.on_change is not None:
            self.on_change(self.problem)
        return problem

    def delete_problem(self) -> bool:
        if not self._require_idle():
            return False
        try:
            self.store.delete(self.problem)
        except OSError as e:
            logger.error("[Judge] Failed to delete problem: %s", e)
            self._notify("error", f"Failed to delete problem: {e}")
            return False
        self.problem = None
        self.compilation_message = ""
        if self.on_change is not None:
            self.on_change(None)
        return True

    def edit_problem_details(
        self,
        name: Optional[str] = None,
        url: Optional[str] = None,
        time_limit: Optional[int] = None,
        memory_limit: Optional[int] = None,
        compilation_settings: Optional[CompilationSettings] = None,
    ) -> bool:
        if not self._require_idle():
            return False
        for label, value in (("Time limit", time_limit),
                             ("Memory limit", memory_limit)):
            if value is not None and value <= 0:
                self._notify("warning", f"{label} must be positive")
                return False
        problem = self.problem
        if name is not None:
            problem.name = name
        if url is not None:
            problem.url = url or None
        if time_limit is not None:
            problem.time_limit = time_limit
        if memory_limit is not None:
            problem.memory_limit = memory_limit
        if compilation_settings is not None:
            problem.compilation_settings = compilation_settings
        self._refresh()
        return True

    def set_checker(self, checker_path: str) -> bool:
        if not self._require_idle():
            return False
        if not Path(checker_path).is_file():
            self._notify("warning", f"Checker not found: {checker_path}")
            return False
        self.problem.checker = FileWithHash(checker_path)
        self._refresh()
        return True

    def remove_checker(self) -> bool:
        if not self._require_idle():
            return False
        self.problem.checker = None
        self._refresh()
        return True

    # ---- test case operations ----

    def add_test_case(self, stdin: IOLike = "", answer: IOLike = ""
                      ) -> Optional[str]:
        if not self._require_idle():
            return None
        tc = TestCase(stdin=as_io(stdin), answer=as_io(answer))
        if not self._readable(tc.stdin) or not self._readable(tc.answer):
            return None
        tc_id = self.problem.add_test_case(tc)
        self._refresh()
        return tc_id

    def update_test_case(self, index: int, stdin: Optional[IOLike] = None,
                         answer: Optional[IOLike] = None) -> bool:
        if not self._require_idle():
            return False
        found = self._test_case(index)
        if found is None:
            return False
        _, tc = found
        new_stdin = as_io(stdin) if stdin is not None else tc.stdin
        new_answer = as_io(answer) if answer is not None else tc.answer
        if not self._readable(new_stdin) or not self._readable(new_answer):
            return False
        tc.stdin, tc.answer = new_stdin, new_answer
        self._refresh()
        return True

    def delete_test_case(self, index: int) -> bool:
        if not self._require_idle():
            return False
        found = self._test_case(index)
        if found is None:
            return False
        tc_id, _ = found
        del self.problem.test_cases[tc_id]
        self.problem.test_case_order.remove(tc_id)
        self._refresh()
        return True

    def move_test_case(self, index: int, new_index: int) -> bool:
        if not self._require_idle():
            return False
        found = self._test_case(index)
        if found is None:
            return False
        order = self.problem.test_case_order
        if not 0 <= new_index < len(order):
            self._notify("warning", f"Test case {new_index} does not exist")
            return False
        order.insert(new_index, order.pop(index))
        self._refresh()
        return True

    def toggle_disable(self, index: int) -> bool:
        if not self._require_idle():
            return False
        found = self._test_case(index)
        if found is None:
            return False
        _, tc = found
        tc.disabled = not tc.disabled
        self._refresh()
        return True

    def toggle_expand(self, index: int) -> bool:
        if not self._require_problem():
            return False
        found = self._test_case(index)
        if found is None:
            return False
        _, tc = found
        tc.expanded = not tc.expanded
        self._refresh()
        return True

    def clear_test_case_status(self, index: int) -> bool:
        if not self._require_idle():
            return False
        found = self._test_case(index)
        if found is None:
            return False
        _, tc = found
        tc.last_result = None
        self._refresh()
        return True

    def clear_status(self) -> bool:
        if not self._require_idle():
            return False
        for tc in self.problem.ordered():
            tc.last_result = None
        self.compilation_message = ""
        self._refresh()
        return True

    def to_file(self, index: int, field: str,
                path: Optional[str] = None) -> bool:
        """Move inline test data out to a file, by default beside the
        problem's saved state."""
        if not self._require_idle() or not self._valid_field(field):
            return False
        found = self._test_case(index)
        if found is None:
            return False
        tc_id, tc = found
        io = getattr(tc, field)
        if isinstance(io, FileIO):
            self._notify("info", "Test data is already stored in a file")
            return False
        if path is None:
            path = str(self._data_path(tc_id, field))
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            Path(path).write_text(io.data, encoding="utf-8")
        except OSError as e:
            self._notify("error", f"Cannot write {path}: {e}")
            return False
        setattr(tc, field, FileIO(path))
        self._refresh()
        return True

    def to_inline(self, index: int, field: str) -> bool:
        if not self._require_idle() or not self._valid_field(field):
            return False
        found = self._test_case(index)
        if found is None:
            return False
        _, tc = found
        io = getattr(tc, field)
        if isinstance(io, InlineIO):
            self._notify("info", "Test data is already inline")
            return False
        try:
            if Path(io.path).stat().st_size > self.settings.max_inline_length:
                self._notify("warning", "File is too large to be inlined")
                return False
            data = read_io(io)
        except OSError as e:
            self._notify("error", f"Cannot read {io.path}: {e}")
            return False
        setattr(tc, field, InlineIO(data))
        self._refresh()
        return True

    def _valid_field(self, field: str) -> bool:
        if field not in IO_FIELDS:
            self._notify("warning", f"Unknown test data field: {field}")
            return False
        return True

    def _readable(self, io: IOValue) -> bool:
        if isinstance(io, FileIO) and not Path(io.path).is_file():
            self._notify("warning", f"File not found: {io.path}")
            return False
        return True

    def _data_path(self, tc_id: str, field: str) -> Path:
        src = Path(self.problem.source.path)
        suffix = ".in" if field == "stdin" else ".ans"
        return (src.parent / self.settings.problem_folder /
                f"{src.stem}-{tc_id[:8]}{suffix}")

    # ---- running ----

    async def run_all(self, force_compile: Optional[bool] = None) -> bool:
        """Judge every enabled test case in order."""
        if not self._require_idle():
            return False
        ids = [tc_id for tc_id in self.problem.test_case_order
               if not self.problem.test_cases[tc_id].disabled]
        if not ids:
            self._notify("info", "There are no enabled test cases to run")
            return False
        return await self._run(ids, force_compile)

    async def run_test_case(self, index: int,
                            force_compile: Optional[bool] = None) -> bool:
        if not self._require_idle():
            return False
        found = self._test_case(index)
        if found is None:
            return False
        return await self._run([found[0]], force_compile)

    async def stop_run(self, only_one: bool = False):
        """Cancel the current run, or reject cases left mid-run.

        With ``only_one`` just the case being judged is aborted and the
        batch goes on with the next one.
        """
        if self._token is not None:
            logger.info("[Judge] Stop requested (only_one=%s)", only_one)
            self._token.cancel(STOP_ONE if only_one else STOP_ALL)
            if not only_one:
                while self._token is not None:
                    await asyncio.sleep(0.01)
            return
        if self.problem is not None and self._reject_unfinished():
            self._refresh()

    async def _run(self, ids: List[str], force_compile: Optional[bool]) -> bool:
        problem = self.problem
        self._token = CancelToken()
        try:
            for tc_id in ids:
                problem.test_cases[tc_id].last_result = RunResult(
                    verdict=Verdict.CP)
            self._refresh()

            commands = await self._compile(ids, force_compile)
            if commands is None:
                return False
            command, cwd, checker_command = commands

            for tc_id in ids:
                self._mark(problem.test_cases[tc_id], Verdict.CPD)
            self._refresh()

            expanded_any = False
            for position, tc_id in enumerate(ids):
                tc = problem.test_cases[tc_id]
                if self._token.cancelled:
                    if self._token.reason != STOP_ONE:
                        self._skip(ids[position:])
                        break
                    self._token = CancelToken()

                await self._judge_case(tc_id, tc, command, cwd,
                                       checker_command)
                expanded_any = self._apply_expand(tc, position, expanded_any)
                self._refresh()
            return True
        finally:
            self._token = None
            self._reject_unfinished()
            self._refresh()

    async def _compile(
        self, ids: List[str], force_compile: Optional[bool]
    ) -> Optional[Tuple[List[str], str, Optional[List[str]]]]:
        problem = self.problem
        outcome = await self.compiler.compile(problem.source, self._token,
                                              force_compile,
                                              problem.compilation_settings)
        if outcome.ok:
            problem.source.hash = outcome.hash
        message = outcome.message

        checker_command = None
        if outcome.ok and problem.checker is not None:
            checker_outcome = await self.compiler.compile_optional(
                problem.checker, self._token, force_compile)
            if checker_outcome.ok:
                problem.checker.hash = checker_outcome.hash
                checker_command = checker_outcome.command
            else:
                outcome = checker_outcome
                message = f"Checker: {checker_outcome.message}"

        self.compilation_message = message
        if outcome.ok:
            logger.info("[Judge] Compiled %s", problem.source.path)
            return (outcome.command, str(Path(outcome.output_path).parent),
                    checker_command)

        verdict = Verdict.RJ if self._token.cancelled else Verdict.CE
        logger.info("[Judge] Compilation of %s failed", problem.source.path)
        for tc_id in ids:
            problem.test_cases[tc_id].last_result = RunResult(
                verdict=verdict,
                message=("Compilation aborted" if verdict == Verdict.RJ else
                         "Compilation failed"))
        return None

    async def _judge_case(self, tc_id: str, tc: TestCase, command: List[str],
                          cwd: str, checker_command: Optional[List[str]]):
        problem = self.problem
        try:
            self._mark(tc, Verdict.JG)
            self._refresh()
            outcome = await self.runner.run(
                command, tc.stdin, problem.time_limit, self._token,
                cwd=cwd, output_key=(problem.source.path, tc_id))
            tc.last_result = RunResult(
                verdict=Verdict.JGD,
                elapsed_ms=outcome.elapsed_ms,
                memory_mb=outcome.memory_mb,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                message=outcome.message,
            )
            self._refresh()
            if outcome.verdict != Verdict.UKE:
                self._mark(tc, outcome.verdict)
                return

            if outcome.elapsed_ms > problem.time_limit:
                self._mark(tc, Verdict.TLE)
                return
            if (outcome.memory_mb is not None
                    and outcome.memory_mb > problem.memory_limit):
                self._mark(tc, Verdict.MLE)
                return

            self._mark(tc, Verdict.CMP)
            self._refresh()
            if checker_command is not None:
                verdict, message = await self.checker.run_checker(
                    checker_command, tc.stdin, outcome.stdout, tc.answer,
                    self._token, key=(problem.source.path, tc_id))
                tc.last_result = replace(tc.last_result, verdict=verdict,
                                         message=message)
            else:
                verdict = compare(read_io(outcome.stdout), read_io(tc.answer),
                                  read_io(outcome.stderr), self.settings)
                self._mark(tc, verdict)
        except Exception as e:
            logger.exception("[Judge] Test case %s failed", tc_id)
            tc.last_result = replace(tc.last_result or RunResult(),
                                     verdict=Verdict.SE,
                                     message=f"{type(e).__name__}: {e}")
        finally:
            logger.info("[Judge] Test case %s: %s", tc_id,
                        tc.last_result.verdict.value)

    @staticmethod
    def _mark(tc: TestCase, verdict: Verdict):
        tc.last_result = replace(tc.last_result or RunResult(),
                                 verdict=verdict)

    def _skip(self, ids: List[str]):
        for tc_id in ids:
            self._mark(self.problem.test_cases[tc_id], Verdict.SK)

    def _apply_expand(self, tc: TestCase, position: int,
                      expanded_any: bool) -> bool:
        behavior = self.settings.expand_behavior
        if behavior == "always":
            tc.expanded = True
        elif behavior == "never":
            tc.expanded = False
        elif behavior == "first":
            tc.expanded = position == 0
        elif behavior == "first_failed":
            tc.expanded = (not expanded_any
                           and tc.last_result.verdict.is_expand)
        return expanded_any or tc.expanded

    def _reject_unfinished(self) -> bool:
        changed = False
        for tc in self.problem.ordered():
            if tc.last_result is not None and tc.last_result.verdict.is_running:
                self._mark(tc, Verdict.RJ)
                changed = True
        return changed
