import re

from .config import JudgeSettings
from .models import Verdict

_WHITESPACE = re.compile(r"\s")


def compress(text: str) -> str:
    """Drop every whitespace character."""
    return _WHITESPACE.sub("", text)


def trim_lines(text: str) -> str:
    """Trim trailing whitespace of the text and of each of its lines."""
    return "\n".join(line.rstrip() for line in text.rstrip().split("\n"))


def compare(stdout: str, answer: str, stderr: str,
            settings: JudgeSettings) -> Verdict:
    """Classify captured output against the expected answer.

    Rules are applied in order and the first match wins: stderr output,
    output length blow-up, content mismatch ignoring all whitespace, then
    layout mismatch after trimming trailing whitespace.
    """
    if stderr and not settings.ignore_stderr:
        return Verdict.RE

    if (settings.ole_size and stdout
            and len(stdout) >= len(answer) * settings.ole_size):
        return Verdict.OLE

    if compress(stdout) != compress(answer):
        return Verdict.WA

    if trim_lines(stdout) != trim_lines(answer) and not settings.regard_pe_as_ac:
        return Verdict.PE

    return Verdict.AC
