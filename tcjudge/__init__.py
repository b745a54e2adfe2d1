from .config import JudgeSettings, load_settings
from .judge import JudgeSession
from .models import FileIO, InlineIO, Problem, RunResult, TestCase, Verdict

__all__ = [
    "JudgeSettings",
    "JudgeSession",
    "FileIO",
    "InlineIO",
    "Problem",
    "RunResult",
    "TestCase",
    "Verdict",
    "load_settings",
]
