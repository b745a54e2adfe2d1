import hashlib
import logging
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from .config import JudgeSettings, split_args
from .models import CompilationSettings, FileWithHash
from .runner import AbortReason, CancelToken, ProcessRunner
from .scratch import ScratchDir, derive_name

logger = logging.getLogger(__name__)
compilation_logger = logging.getLogger("tcjudge.compilation")

IS_WINDOWS = platform.system() == "Windows"


@dataclass
class CompileOutcome:
    ok: bool
    message: str = ""
    output_path: Optional[str] = None
    hash: Optional[str] = None
    command: List[str] = field(default_factory=list)
    skipped: bool = False


class Language:
    """A compiler binary plus flag string, chosen by source extension."""

    output_suffix = ".exe" if IS_WINDOWS else ""
    native = True

    def __init__(self, name: str, cfg: dict):
        self.name = name
        self.cfg = cfg

    def compiler(self, overrides: Optional[CompilationSettings]) -> str:
        if overrides and overrides.compiler:
            return overrides.compiler
        return self.cfg["compiler"]

    def compiler_args(self, overrides: Optional[CompilationSettings]) -> str:
        if overrides and overrides.compiler_args is not None:
            return overrides.compiler_args
        return self.cfg.get("args", "")

    def cache_key(self, overrides: Optional[CompilationSettings]) -> str:
        return self.compiler(overrides) + self.compiler_args(overrides)

    def compile_command(self, src: str, output: str,
                        overrides: Optional[CompilationSettings]) -> List[str]:
        return [self.compiler(overrides)] + split_args(
            self.compiler_args(overrides)) + [src, "-o", output]

    def run_command(self, output: str,
                    overrides: Optional[CompilationSettings]) -> List[str]:
        return [output]


class PythonLanguage(Language):
    output_suffix = ".pyc"
    native = False

    def compile_command(self, src, output, overrides):
        return [self.compiler(overrides)] + split_args(
            self.compiler_args(overrides)) + [
                "-c",
                "import py_compile, sys; "
                "py_compile.compile(sys.argv[1], cfile=sys.argv[2], doraise=True)",
                src,
                output,
            ]

    def run_command(self, output, overrides):
        runner = (overrides.runner if overrides and overrides.runner else
                  self.cfg.get("runner", self.cfg["compiler"]))
        if overrides and overrides.runner_args is not None:
            runner_args = overrides.runner_args
        else:
            runner_args = self.cfg.get("runner_args", "")
        return [runner] + split_args(runner_args) + [output]


LANGUAGE_CLASSES = {
    "python": PythonLanguage,
}


class Compiler:

    def __init__(self, settings: JudgeSettings, scratch: ScratchDir,
                 executor: Optional[ProcessRunner] = None):
        self.settings = settings
        self.scratch = scratch
        self.executor = executor or ProcessRunner(settings, scratch)

    def language_for(self, path: str) -> Optional[Language]:
        name = self.settings.language_for(Path(path).suffix)
        if name is None:
            return None
        cls = LANGUAGE_CLASSES.get(name, Language)
        return cls(name, self.settings.languages[name])

    def output_path_for(self, src: str, language: Language) -> Path:
        # Namespaced by the source path so equally named files never collide
        stem = Path(src).stem
        tag = derive_name(os.path.abspath(src))[:8]
        return self.scratch.bin_dir / f"{stem}-{tag}{language.output_suffix}"

    def check_hash(self, src: FileWithHash, output: Path, additional: str,
                   force_compile: Optional[bool],
                   language: Language) -> Tuple[bool, str]:
        """Decide whether compilation can be skipped.

        The stored hash only counts while the binary it produced still exists
        and can be invoked. Otherwise any stale binary is removed so a failed
        compile cannot leave it behind to be reused.
        """
        with open(src.path, "rb") as f:
            content = f.read()
        digest = hashlib.sha256(content + additional.encode()).hexdigest()
        if force_compile is False or (force_compile is not True
                                      and src.hash == digest
                                      and self._invokable(output, language)):
            logger.debug("[Compiler] Skipping compilation of %s", src.path)
            return True, digest
        output.unlink(missing_ok=True)
        logger.debug("[Compiler] Proceeding with compilation of %s (%s -> %s)",
                     src.path, src.hash, digest)
        return False, digest

    @staticmethod
    def _invokable(output: Path, language: Language) -> bool:
        if not output.is_file():
            return False
        return not language.native or os.access(output, os.X_OK)

    async def compile(
        self,
        src: FileWithHash,
        token: Optional[CancelToken] = None,
        force_compile: Optional[bool] = None,
        overrides: Optional[CompilationSettings] = None,
    ) -> CompileOutcome:
        """Compile ``src`` unless an up-to-date binary already exists.

        Every failure, including a missing compiler, a timeout or a
        cancellation, is reported as a failed outcome carrying a message.
        """
        language = self.language_for(src.path)
        if language is None:
            return CompileOutcome(
                ok=False,
                message=f"Unsupported file type: {Path(src.path).suffix or src.path}")

        output = self.output_path_for(src.path, language)
        try:
            skip, digest = self.check_hash(src, output,
                                           language.cache_key(overrides),
                                           force_compile, language)
        except OSError as e:
            return CompileOutcome(ok=False,
                                  message=f"Cannot read {src.path}: {e}")
        command = language.run_command(str(output), overrides)
        if skip:
            return CompileOutcome(ok=True, output_path=str(output),
                                  hash=digest, command=command, skipped=True)

        cmd = language.compile_command(os.path.abspath(src.path), str(output),
                                       overrides)
        logger.info("[Compiler] Compile command: %s", " ".join(cmd))
        result = await self.executor.execute(
            cmd,
            cwd=str(Path(src.path).parent),
            timeout_ms=self.settings.compile_timeout_ms,
            token=token,
        )
        diagnostics = "\n\n".join(
            text.strip() for text in (result.stderr, result.stdout)
            if text.strip())

        if result.error is not None:
            message = result.error
        elif result.abort_reason == AbortReason.USER:
            message = "Compilation aborted by user."
        elif result.abort_reason == AbortReason.TIMEOUT:
            message = "Compilation failed because of timeout."
        elif result.returncode != 0:
            message = diagnostics or f"Compiler exited with code {result.returncode}."
        elif not self._invokable(output, language):
            message = diagnostics or "Compiler produced no executable."
        else:
            if diagnostics:
                compilation_logger.info("%s", diagnostics)
            return CompileOutcome(ok=True, message=diagnostics,
                                  output_path=str(output), hash=digest,
                                  command=command)

        output.unlink(missing_ok=True)
        compilation_logger.warning("[Compiler] %s: %s", src.path, message)
        return CompileOutcome(ok=False, message=message)

    async def compile_optional(
        self,
        src: FileWithHash,
        token: Optional[CancelToken] = None,
        force_compile: Optional[bool] = None,
    ) -> CompileOutcome:
        """Compile a helper program, using unknown file types as-is."""
        if self.language_for(src.path) is None:
            return CompileOutcome(ok=True, output_path=src.path,
                                  hash=src.hash, command=[src.path],
                                  skipped=True)
        return await self.compile(src, token, force_compile)
