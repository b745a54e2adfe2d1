import asyncio
from pathlib import Path

import pytest

import tcjudge.checker as checking
from tcjudge.checker import Checker, checker_verdict
from tcjudge.models import FileIO, InlineIO, Verdict
from tcjudge.runner import AbortReason, CancelToken, ExecuteResult

# exits with the code written in the input file
EXIT_WITH_INPUT = """\
import sys
code = int(open(sys.argv[1]).read())
sys.stderr.write("checker says %d\\n" % code)
sys.exit(code)
"""


@pytest.fixture
def checker(settings, scratch):
    return Checker(settings, scratch)


@pytest.mark.parametrize("code,verdict", [
    (0, Verdict.AC),
    (1, Verdict.WA),
    (2, Verdict.PE),
    (3, Verdict.SE),
    (4, Verdict.WA),
    (5, Verdict.PC),
    (6, Verdict.SE),
])
def test_exit_codes(checker, make_script, code, verdict):
    script = make_script("checker.py", EXIT_WITH_INPUT)
    got, message = asyncio.run(
        checker.run_checker([script], InlineIO(str(code)), InlineIO("out"),
                            InlineIO("ans")))
    assert got == verdict
    assert f"checker says {code}" in message
    if code == 6:
        assert "6" in message.splitlines()[-1]


def test_files_are_passed_in_order(checker, make_script, tmp_path):
    script = make_script("checker.py", """\
        import sys
        data = [open(p).read() for p in sys.argv[1:4]]
        print("|".join(data))
        sys.exit(0 if data == ["in", "out", "ans"] else 1)
    """)
    answer = tmp_path / "answer.txt"
    answer.write_text("ans")
    verdict, message = asyncio.run(
        checker.run_checker([script], InlineIO("in"), InlineIO("out"),
                            FileIO(str(answer)), key=("problem", "case")))
    assert verdict == Verdict.AC
    assert message == "in|out|ans"


def test_missing_checker_is_system_error(checker, tmp_path):
    verdict, message = asyncio.run(
        checker.run_checker([str(tmp_path / "nope")], InlineIO(), InlineIO(),
                            InlineIO()))
    assert verdict == Verdict.SE
    assert "failed to start" in message


def test_crashing_checker_is_never_wrong_answer(checker, make_script):
    script = make_script("checker.py", """\
        import os, signal
        os.kill(os.getpid(), signal.SIGKILL)
    """)
    verdict, _ = asyncio.run(
        checker.run_checker([script], InlineIO(), InlineIO(), InlineIO()))
    assert verdict == Verdict.SE


def test_slow_checker_times_out(settings, scratch, make_script):
    settings.checker_timeout_ms = 300
    script = make_script("checker.py", """\
        import time
        time.sleep(10)
    """)
    verdict, message = asyncio.run(
        Checker(settings, scratch).run_checker([script], InlineIO(),
                                               InlineIO(), InlineIO()))
    assert verdict == Verdict.SE
    assert "timed out" in message


def test_cancelled_checker_is_rejected(checker, make_script):
    script = make_script("checker.py", "import time\ntime.sleep(10)\n")

    async def scenario():
        token = CancelToken()
        task = asyncio.ensure_future(
            checker.run_checker([script], InlineIO(), InlineIO(), InlineIO(),
                                token))
        await asyncio.sleep(0.2)
        token.cancel()
        return await task

    verdict, _ = asyncio.run(scenario())
    assert verdict == Verdict.RJ


def test_unreadable_inline_target_is_setup_failure(checker, scratch,
                                                   monkeypatch):

    def fail(*args, **kwargs):
        raise PermissionError("read-only")

    monkeypatch.setattr(Path, "write_text", fail)
    verdict, message = asyncio.run(
        checker.run_checker(["true"], InlineIO("x"), InlineIO(), InlineIO()))
    assert verdict == Verdict.SE
    assert "setup failed" in message


def test_unknown_code_message():
    verdict, message = checking.testlib_verdict(42)
    assert verdict == Verdict.SE
    assert message == "Checker returned unknown exit code: 42"


def test_checker_output_prefers_stderr():
    result = ExecuteResult(returncode=1, stdout="from stdout",
                           stderr=" from stderr \n")
    assert checker_verdict(result) == (Verdict.WA, "from stderr")
    result = ExecuteResult(returncode=4, stdout="from stdout")
    assert checker_verdict(result) == (Verdict.WA,
                                       "from stdout\nUnexpected EOF")
    result = ExecuteResult(abort_reason=AbortReason.TIMEOUT)
    assert checker_verdict(result)[0] == Verdict.SE
