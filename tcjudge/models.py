import enum
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union


class Verdict(str, enum.Enum):
    UKE = "UKE"
    AC = "AC"
    PC = "PC"
    PE = "PE"
    WA = "WA"
    TLE = "TLE"
    MLE = "MLE"
    OLE = "OLE"
    RE = "RE"
    RF = "RF"
    CE = "CE"
    SE = "SE"
    WT = "WT"
    CP = "CP"
    CPD = "CPD"
    JG = "JG"
    JGD = "JGD"
    CMP = "CMP"
    SK = "SK"
    RJ = "RJ"

    @property
    def full_name(self) -> str:
        return VERDICT_TABLE[self][0]

    @property
    def color(self) -> str:
        return VERDICT_TABLE[self][1]

    @property
    def is_running(self) -> bool:
        return self in RUNNING_VERDICTS

    @property
    def is_expand(self) -> bool:
        """Whether a case that ended with this verdict deserves attention."""
        return not (self in (Verdict.AC, Verdict.SK, Verdict.RJ)
                    or self.is_running)


VERDICT_TABLE = {
    Verdict.UKE: ("Unknown Error", "#0000ff"),
    Verdict.AC: ("Accepted", "#49cd32"),
    Verdict.PC: ("Partially Correct", "#ed9813"),
    Verdict.PE: ("Presentation Error", "#ff778e"),
    Verdict.WA: ("Wrong Answer", "#d3140d"),
    Verdict.TLE: ("Time Limit Exceeded", "#0c0066"),
    Verdict.MLE: ("Memory Limit Exceeded", "#5300a7"),
    Verdict.OLE: ("Output Limit Exceeded", "#8300a7"),
    Verdict.RE: ("Runtime Error", "#1a26c8"),
    Verdict.RF: ("Restricted Function", "#008f81"),
    Verdict.CE: ("Compilation Error", "#8b7400"),
    Verdict.SE: ("System Error", "#000000"),
    Verdict.WT: ("Waiting", "#4100d9"),
    Verdict.CP: ("Compiling", "#5e19ff"),
    Verdict.CPD: ("Compiled", "#7340ff"),
    Verdict.JG: ("Judging", "#844fff"),
    Verdict.JGD: ("Judged", "#967fff"),
    Verdict.CMP: ("Comparing", "#a87dff"),
    Verdict.SK: ("Skipped", "#4b4b4b"),
    Verdict.RJ: ("Rejected", "#4e0000"),
}

RUNNING_VERDICTS = frozenset({
    Verdict.WT, Verdict.CP, Verdict.CPD, Verdict.JG, Verdict.JGD, Verdict.CMP
})


# Test data is either inline text or a file on disk, never both.
@dataclass(frozen=True)
class InlineIO:
    data: str = ""


@dataclass(frozen=True)
class FileIO:
    path: str


IOValue = Union[InlineIO, FileIO]


def read_io(io: IOValue) -> str:
    if isinstance(io, InlineIO):
        return io.data
    if isinstance(io, FileIO):
        return Path(io.path).read_text(encoding="utf-8", errors="replace")
    raise TypeError(f"not an IO value: {io!r}")


def io_to_dict(io: IOValue) -> dict:
    if isinstance(io, InlineIO):
        return {"inline": io.data}
    if isinstance(io, FileIO):
        return {"file": io.path}
    raise TypeError(f"not an IO value: {io!r}")


def io_from_dict(data: dict) -> IOValue:
    if ("inline" in data) == ("file" in data):
        raise ValueError(
            f"IO value must have exactly one of 'inline' or 'file': {data}")
    if "inline" in data:
        return InlineIO(data["inline"])
    return FileIO(data["file"])


@dataclass
class FileWithHash:
    path: str
    hash: Optional[str] = None


@dataclass
class CompilationSettings:
    compiler: Optional[str] = None
    compiler_args: Optional[str] = None
    runner: Optional[str] = None
    runner_args: Optional[str] = None


@dataclass(frozen=True)
class RunResult:
    verdict: Verdict = Verdict.UKE
    elapsed_ms: Optional[float] = None
    memory_mb: Optional[float] = None
    stdout: IOValue = InlineIO()
    stderr: IOValue = InlineIO()
    message: str = ""


@dataclass
class TestCase:
    __test__ = False  # keep pytest from collecting it

    stdin: IOValue = InlineIO()
    answer: IOValue = InlineIO()
    last_result: Optional[RunResult] = None
    disabled: bool = False
    expanded: bool = False


@dataclass
class Problem:
    name: str
    source: FileWithHash
    url: Optional[str] = None
    time_limit: int = 1000  # ms
    memory_limit: int = 256  # MB
    checker: Optional[FileWithHash] = None
    test_cases: Dict[str, TestCase] = field(default_factory=dict)
    test_case_order: List[str] = field(default_factory=list)
    compilation_settings: Optional[CompilationSettings] = None

    def add_test_case(self, test_case: TestCase) -> str:
        tc_id = str(uuid.uuid4())
        self.test_cases[tc_id] = test_case
        self.test_case_order.append(tc_id)
        return tc_id

    def ordered(self) -> List[TestCase]:
        return [self.test_cases[tc_id] for tc_id in self.test_case_order]

    def id_at(self, index: int) -> Optional[str]:
        if 0 <= index < len(self.test_case_order):
            return self.test_case_order[index]
        return None
