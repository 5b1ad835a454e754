"""
Binary in, binary out entry points.

Each call runs one invocation end to end:

    disassemble -> classify -> patch -> assemble -> optimize | validate

Any failing step raises a MultiviewPatchError subclass and no output is
produced. Nothing is shared between calls except the SpirvTools settings.
"""

from __future__ import annotations

import logging
from typing import Optional

from .core import InstructionSequence
from .errors import UnsupportedFlavorError, ValidationError
from .patcher import (
    MatrixLayout,
    PatchReport,
    ShaderFlavor,
    add_multiview_capability as _add_capability,
    classify,
    patch_vertex_shader,
    rewrite_entry_point,
)
from .toolchain import SpirvTools, word_count


logger = logging.getLogger(__name__)


def disassemble_sequence(binary: bytes, tools: Optional[SpirvTools] = None) -> InstructionSequence:
    tools = tools or SpirvTools()
    return InstructionSequence.from_text(tools.disassemble(binary))


def optimize(binary: bytes, tools: Optional[SpirvTools] = None) -> bytes:
    tools = tools or SpirvTools()
    optimized = tools.optimize(binary)
    logger.debug("optimized module: %d -> %d words", word_count(binary), word_count(optimized))
    return optimized


def add_multiview_capability(binary: bytes, tools: Optional[SpirvTools] = None) -> bytes:
    tools = tools or SpirvTools()
    sequence = disassemble_sequence(binary, tools)
    flavor = classify(sequence)
    if flavor is not ShaderFlavor.VERTEX:
        raise UnsupportedFlavorError(flavor, "add_multiview_capability")
    _add_capability(sequence)
    rewrite_entry_point(sequence, include_view_index=False)
    out = _reassemble(sequence, tools)
    tools.validate(out)
    logger.debug("added multiview capability (%d words)", word_count(out))
    return out


def relocate_multiview_data_access(
    binary: bytes,
    field_index: int,
    base_offset: int,
    optimize: bool = False,
    tools: Optional[SpirvTools] = None,
    layout: Optional[MatrixLayout] = None,
) -> bytes:
    tools = tools or SpirvTools()
    sequence = disassemble_sequence(binary, tools)
    flavor = classify(sequence)

    if flavor is ShaderFlavor.FIXED_FUNCTION_VERTEX:
        # Fixed-function shaders are relocated by their producer; only optimize or validate.
        if optimize:
            return tools.optimize(binary)
        tools.validate(binary)
        return binary

    if flavor is not ShaderFlavor.VERTEX:
        raise UnsupportedFlavorError(flavor, "relocate_multiview_data_access")

    report = patch_vertex_shader(sequence, field_index, base_offset, layout)
    logger.debug(
        "patched vertex shader: %d instructions inserted, %d rewritten",
        len(report.changes.inserted),
        len(report.changes.rewritten),
    )
    out = _reassemble(sequence, tools)
    if optimize:
        return tools.optimize(out)
    try:
        tools.validate(out)
    except ValidationError:
        if tools.config.dump_on_failure:
            logger.error("shader validation failed:\n%s", sequence.to_text())
        raise
    return out


def patch_text(
    text: str,
    field_index: int,
    base_offset: int,
    layout: Optional[MatrixLayout] = None,
) -> tuple[InstructionSequence, Optional[PatchReport]]:
    """Patch disassembly text without touching the toolchain."""
    sequence = InstructionSequence.from_text(text)
    flavor = classify(sequence)
    if flavor is ShaderFlavor.FIXED_FUNCTION_VERTEX:
        return sequence, None
    if flavor is not ShaderFlavor.VERTEX:
        raise UnsupportedFlavorError(flavor, "patch_text")
    report = patch_vertex_shader(sequence, field_index, base_offset, layout)
    return sequence, report


def _reassemble(sequence: InstructionSequence, tools: SpirvTools) -> bytes:
    return tools.assemble(sequence.to_text())
