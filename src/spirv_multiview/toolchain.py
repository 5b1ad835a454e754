"""
Thin wrapper over the SPIRV-Tools command line programs.

spirv-dis, spirv-as, spirv-opt and spirv-val are run as subprocesses with
the module on stdin and the result on stdout. Whatever a tool prints on
stderr is forwarded to the message consumer line by line; it never changes
the outcome of a call, only the tool's exit status does.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import struct
import subprocess
from typing import Callable, List, Optional, Sequence, Type

from .errors import (
    AssemblyError,
    DisassemblyError,
    OptimizationError,
    ToolchainError,
    ToolNotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)

SPIRV_MAGIC = 0x07230203
WORD = struct.Struct("<I")

MessageConsumer = Callable[[int, str], None]


@dataclass
class ToolchainConfig:
    spirv_dis: str = "spirv-dis"
    spirv_as: str = "spirv-as"
    spirv_opt: str = "spirv-opt"
    spirv_val: str = "spirv-val"
    target_env: str = "vulkan1.3"
    timeout: float = 60.0
    dump_on_failure: bool = False

    @classmethod
    def from_env(cls) -> "ToolchainConfig":
        config = cls()
        config.spirv_dis = os.environ.get("SPIRV_DIS", config.spirv_dis)
        config.spirv_as = os.environ.get("SPIRV_AS", config.spirv_as)
        config.spirv_opt = os.environ.get("SPIRV_OPT", config.spirv_opt)
        config.spirv_val = os.environ.get("SPIRV_VAL", config.spirv_val)
        config.target_env = os.environ.get("SPIRV_TARGET_ENV", config.target_env)
        timeout = os.environ.get("SPIRV_TOOL_TIMEOUT")
        if timeout:
            config.timeout = float(timeout)
        return config


def log_message(level: int, message: str) -> None:
    logger.log(level, "SPIRV-Tools: %s", message)


def to_words(binary: bytes) -> List[int]:
    if len(binary) % WORD.size:
        raise ValueError(f"SPIR-V binary size {len(binary)} is not a multiple of {WORD.size}")
    return [value for (value,) in WORD.iter_unpack(binary)]


def from_words(words: Sequence[int]) -> bytes:
    return b"".join(WORD.pack(word) for word in words)


def word_count(binary: bytes) -> int:
    return len(binary) // WORD.size


def looks_like_spirv(binary: bytes) -> bool:
    return len(binary) >= WORD.size and WORD.unpack_from(binary)[0] == SPIRV_MAGIC


class SpirvTools:
    def __init__(
        self,
        config: Optional[ToolchainConfig] = None,
        message_consumer: Optional[MessageConsumer] = None,
    ) -> None:
        self.config = config or ToolchainConfig.from_env()
        self.message_consumer = message_consumer or log_message

    def disassemble(self, binary: bytes) -> str:
        output = self._run(
            self.config.spirv_dis,
            ["-", "-o", "-"],
            binary,
            DisassemblyError,
        )
        return output.decode("utf-8")

    def assemble(self, text: str) -> bytes:
        return self._run(
            self.config.spirv_as,
            ["--target-env", self.config.target_env, "-", "-o", "-"],
            text.encode("utf-8"),
            AssemblyError,
        )

    def optimize(self, binary: bytes) -> bytes:
        return self._run(
            self.config.spirv_opt,
            ["-O", f"--target-env={self.config.target_env}", "-", "-o", "-"],
            binary,
            OptimizationError,
        )

    def validate(self, binary: bytes) -> None:
        self._run(
            self.config.spirv_val,
            ["--target-env", self.config.target_env, "-"],
            binary,
            ValidationError,
        )

    def _run(
        self,
        tool: str,
        args: List[str],
        payload: bytes,
        error_type: Type[ToolchainError],
    ) -> bytes:
        cmd = [tool] + args
        logger.debug("running %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                input=payload,
                capture_output=True,
                timeout=self.config.timeout,
            )
        except FileNotFoundError as exc:
            raise ToolNotFoundError(
                f"{tool} not found. Install SPIRV-Tools or set its path.", tool=tool
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise error_type(f"{tool} timed out after {self.config.timeout}s", tool=tool) from exc

        diagnostics = _diagnostic_lines(result.stderr)
        level = logging.ERROR if result.returncode != 0 else logging.WARNING
        for line in diagnostics:
            self.message_consumer(level, line)
        if result.returncode != 0:
            raise error_type(
                f"{os.path.basename(tool)} failed with exit status {result.returncode}",
                tool=tool,
                returncode=result.returncode,
                diagnostics=diagnostics,
            )
        return result.stdout


def _diagnostic_lines(stderr: bytes) -> List[str]:
    text = stderr.decode("utf-8", errors="replace")
    return [line.rstrip() for line in text.splitlines() if line.strip()]
