import logging
from typing import List, Optional, Sequence, Tuple

from .config import JudgeSettings
from .models import IOValue, Verdict
from .runner import AbortReason, CancelToken, ExecuteResult, ProcessRunner
from .scratch import ScratchDir

logger = logging.getLogger(__name__)

# testlib exit codes
TESTLIB_VERDICTS = {
    0: (Verdict.AC, ""),
    1: (Verdict.WA, ""),
    2: (Verdict.PE, ""),
    3: (Verdict.SE, "Checker run failed"),
    4: (Verdict.WA, "Unexpected EOF"),
    5: (Verdict.PC, ""),
}


def testlib_verdict(code: int) -> Tuple[Verdict, str]:
    if code in TESTLIB_VERDICTS:
        return TESTLIB_VERDICTS[code]
    logger.warning("[Checker] Testlib returned unknown exit code %s", code)
    return Verdict.SE, f"Checker returned unknown exit code: {code}"


def checker_verdict(result: ExecuteResult) -> Tuple[Verdict, str]:
    """Map a finished checker process to a verdict and message.

    Anything that keeps the checker from reporting normally is SE, so a
    broken checker never looks like a wrong answer. A cancelled run is RJ.
    """
    if result.error is not None:
        return Verdict.SE, f"Checker failed to start: {result.error}"
    if result.abort_reason == AbortReason.USER:
        return Verdict.RJ, "Aborted by user"
    if result.abort_reason == AbortReason.TIMEOUT:
        return Verdict.SE, "Checker timed out"
    if result.signal_name is not None:
        return Verdict.SE, f"Checker killed by signal: {result.signal_name}"
    verdict, msg = testlib_verdict(result.returncode)
    output = result.stderr.strip() or result.stdout.strip()
    return verdict, f"{output}\n{msg}".strip()


class Checker:

    def __init__(self, settings: JudgeSettings, scratch: ScratchDir,
                 executor: Optional[ProcessRunner] = None):
        self.settings = settings
        self.scratch = scratch
        self.executor = executor or ProcessRunner(settings, scratch)

    async def run_checker(
        self,
        checker_cmd: Sequence[str],
        stdin: IOValue,
        output: IOValue,
        answer: IOValue,
        token: Optional[CancelToken] = None,
        key: Tuple[str, ...] = (),
    ) -> Tuple[Verdict, str]:
        try:
            paths: List[str] = [
                self.scratch.materialize(io, *key, label) if key else
                self.scratch.materialize(io)
                for io, label in ((stdin, "input"), (output, "output"),
                                  (answer, "answer"))
            ]
        except OSError as e:
            logger.warning("[Checker] Checker setup failed: %s", e)
            return Verdict.SE, f"Checker setup failed: {e}"

        logger.info("[Checker] Running %s with %s", checker_cmd[0], paths)
        result = await self.executor.execute(
            list(checker_cmd) + paths,
            timeout_ms=self.settings.checker_timeout_ms,
            token=token,
        )
        logger.debug("[Checker] Exit code %s, stdout %r, stderr %r",
                     result.returncode, result.stdout, result.stderr)
        return checker_verdict(result)
