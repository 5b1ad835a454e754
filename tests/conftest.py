"""Test configuration: source tree on sys.path, shader fixtures and a fake toolchain."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional

import pytest

ROOT = Path(__file__).resolve().parent.parent
DATA = ROOT / "tests" / "data"

src_str = str(ROOT / "src")
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from spirv_multiview.core import InstructionSequence  # noqa: E402
from spirv_multiview.errors import ValidationError  # noqa: E402
from spirv_multiview.toolchain import ToolchainConfig  # noqa: E402


class FakeTools:
    """Stands in for SpirvTools; 'binaries' are the UTF-8 assembly text."""

    def __init__(self, text: str, fail_validation: bool = False) -> None:
        self.text = text
        self.fail_validation = fail_validation
        self.config = ToolchainConfig()
        self.calls: List[str] = []
        self.assembled: Optional[str] = None

    def disassemble(self, binary: bytes) -> str:
        self.calls.append("disassemble")
        return self.text

    def assemble(self, text: str) -> bytes:
        self.calls.append("assemble")
        self.assembled = text
        return text.encode("utf-8")

    def optimize(self, binary: bytes) -> bytes:
        self.calls.append("optimize")
        return b"optimized:" + binary

    def validate(self, binary: bytes) -> None:
        self.calls.append("validate")
        if self.fail_validation:
            raise ValidationError("spirv-val failed with exit status 1", tool="spirv-val", returncode=1)


@pytest.fixture
def vs_text() -> str:
    return (DATA / "vs_test.spvasm").read_text(encoding="utf-8")


@pytest.fixture
def ff_text() -> str:
    return (DATA / "ff_vs.spvasm").read_text(encoding="utf-8")


@pytest.fixture
def vs_sequence(vs_text) -> InstructionSequence:
    return InstructionSequence.from_text(vs_text)


@pytest.fixture
def fake_tools():
    return FakeTools
