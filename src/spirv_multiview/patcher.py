"""
Multiview patch passes over a disassembled vertex shader.

The passes operate on an InstructionSequence in place:

- classify: tell vertex, fixed-function vertex and other shaders apart
  from the first OpString marker.
- add_multiview_capability: make sure OpCapability MultiView is declared.
- rewrite_entry_point: list every module-scope variable on OpEntryPoint.
- patch_matrix_accesses: read the per-view copy of a uniform matrix,
  selected by the ViewIndex built-in.

Pipeline for vertex shaders:
    capability -> entry point (with view index) -> matrix accesses
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import re
from typing import Dict, List, Optional

from .core import ChangeSet, Instruction, InstructionSequence
from .errors import ClassificationError, PreconditionError


logger = logging.getLogger(__name__)

VERTEX_MARKER = "VS_"
FIXED_FUNCTION_VERTEX_MARKER = "FF_VS"
MULTIVIEW_CAPABILITY = "MultiView"
VIEW_INDEX_NAME = "%ViewIndex"
ROW_COUNT = 4

_ENTRY_POINT_RE = re.compile(r'^(\S+)\s+(%\S+)\s+("(?:[^"\\]|\\.)*")')


class ShaderFlavor(Enum):
    VERTEX = "vertex"
    FIXED_FUNCTION_VERTEX = "fixed-function vertex"
    OTHER = "other"


@dataclass(frozen=True)
class MatrixLayout:
    """
    Operand spelling of the matrix row loads to relocate.

    The defaults match shaders where the float constant array is member 1
    of the uniform block %c, and each row is addressed as
    `OpAccessChain %_ptr_Uniform_v4float %c %uint_1 %int_<row>`.
    """
    pointer_type: str = "%_ptr_Uniform_v4float"
    buffer: str = "%c"
    member: str = "%uint_1"
    row_prefix: str = "%int_"
    scalar_type: str = "%uint"

    def access_operands(self, row_operand: str) -> str:
        return f"{self.pointer_type} {self.buffer} {self.member} {row_operand}"

    def row_constant(self, row: int) -> str:
        return f"{self.row_prefix}{row}"

    def uint_constant(self, value: int) -> str:
        return f"{self.scalar_type}_{value}"


@dataclass
class PatchReport:
    """What patch_vertex_shader changed, by result name and instruction."""
    capability_added: bool = False
    view_index: Optional[str] = None
    row_indices: List[str] = field(default_factory=list)
    changes: ChangeSet = field(default_factory=ChangeSet)

    @property
    def inserted_names(self) -> List[str]:
        return [instruction.result for instruction in self.changes.inserted if instruction.result]

    @property
    def rewritten_names(self) -> List[str]:
        return [new.result for new, _ in self.changes.rewritten if new.result]


def classify(sequence: InstructionSequence) -> ShaderFlavor:
    position = sequence.find("OpString")
    if position is None:
        raise ClassificationError("no OpString marker found, cannot tell the shader flavor")
    marker = sequence[position].string_literal() or ""
    if marker.startswith(VERTEX_MARKER):
        flavor = ShaderFlavor.VERTEX
    elif marker.startswith(FIXED_FUNCTION_VERTEX_MARKER):
        flavor = ShaderFlavor.FIXED_FUNCTION_VERTEX
    else:
        flavor = ShaderFlavor.OTHER
    logger.debug("classified shader %r as %s", marker, flavor.value)
    return flavor


def add_multiview_capability(sequence: InstructionSequence, changes: Optional[ChangeSet] = None) -> bool:
    """Declare OpCapability MultiView first unless it is already declared."""
    for instruction in sequence:
        if instruction.opcode != "OpCapability":
            break
        if instruction.operands == MULTIVIEW_CAPABILITY:
            return False
    capability = Instruction(result=None, opcode="OpCapability", operands=MULTIVIEW_CAPABILITY)
    sequence.insert(0, capability)
    if changes is not None:
        changes.inserted.append(capability)
    logger.debug("inserted OpCapability %s", MULTIVIEW_CAPABILITY)
    return True


def module_variables(sequence: InstructionSequence) -> List[str]:
    """Result names of the OpVariables declared outside any function."""
    end = sequence.first_function
    if end is None:
        end = len(sequence)
    return [
        sequence[idx].result
        for idx in range(end)
        if sequence[idx].opcode == "OpVariable" and sequence[idx].result
    ]


def rewrite_entry_point(
    sequence: InstructionSequence,
    include_view_index: bool = True,
    view_index: str = VIEW_INDEX_NAME,
    changes: Optional[ChangeSet] = None,
) -> Instruction:
    """
    Rebuild OpEntryPoint so its interface lists every module-scope variable.

    All global OpVariables are listed, whether or not the entry function
    reaches them; validation only requires a superset.
    """
    position = sequence.find("OpEntryPoint")
    if position is None:
        raise PreconditionError("module has no OpEntryPoint")
    current = sequence[position]
    match = _ENTRY_POINT_RE.match(current.operands)
    if not match:
        raise PreconditionError(f"cannot read OpEntryPoint operands: {current.operands!r}")
    model, function, name = match.groups()

    interface: List[str] = []
    if include_view_index:
        interface.append(view_index)
    for variable in module_variables(sequence):
        if variable not in interface:
            interface.append(variable)

    operands = " ".join([model, function, name] + interface)
    entry = current.with_operands(operands)
    sequence.replace(position, entry)
    if changes is not None:
        changes.rewritten.append((entry, current))
    logger.debug("entry point %s now lists %d interface variables", function, len(interface))
    return entry


def patch_matrix_accesses(
    sequence: InstructionSequence,
    field_index: int,
    base_offset: int,
    layout: Optional[MatrixLayout] = None,
    view_index: str = VIEW_INDEX_NAME,
    changes: Optional[ChangeSet] = None,
) -> List[str]:
    """
    Shift the uniform matrix rows field_index..field_index+3 by ViewIndex.

    Each row load then reads c[base_offset + ViewIndex * 4 + field_index + k]
    instead of c[field_index + k]. Returns the names of the four computed
    row indices. Preconditions are checked before anything is modified.
    """
    layout = layout or MatrixLayout()
    changes = changes if changes is not None else ChangeSet()
    if field_index < 0 or base_offset < 0:
        raise PreconditionError("field_index and base_offset must not be negative")
    if sequence.defines(view_index):
        raise PreconditionError(f"{view_index} is already defined")
    decorate_at = sequence.find("OpDecorate")
    if decorate_at is None:
        raise PreconditionError("module has no OpDecorate to anchor the ViewIndex decoration")
    label_at = _entry_label(sequence)
    required = [layout.scalar_type] + [layout.uint_constant(value) for value in range(ROW_COUNT + 1)]
    missing = [name for name in required if not sequence.defines(name)]
    if missing:
        raise PreconditionError(f"module does not define {', '.join(missing)}")

    uint = layout.scalar_type
    reserved: List[str] = [view_index]

    def fresh(base: str) -> str:
        name = sequence.fresh_name(base, reserved)
        reserved.append(name)
        return name

    def emit(position: int, instruction: Instruction) -> int:
        sequence.insert(position, instruction)
        changes.inserted.append(instruction)
        return position + 1

    emit(decorate_at, Instruction(None, "OpDecorate", f"{view_index} BuiltIn ViewIndex"))

    label_at += 1
    function_at = _declarations_end(sequence, label_at)
    pointer = _input_pointer(sequence, uint, function_at)
    shader_data_begin = fresh("shader_data_begin")
    f_idx = fresh("f_idx")
    position = function_at
    if pointer is None:
        pointer = fresh(f"_ptr_Input_{uint.lstrip('%')}")
        position = emit(position, Instruction(pointer, "OpTypePointer", f"Input {uint}"))
    position = emit(position, Instruction(view_index, "OpVariable", f"{pointer} Input"))
    position = emit(position, Instruction(shader_data_begin, "OpConstant", f"{uint} {base_offset}"))
    position = emit(position, Instruction(f_idx, "OpConstant", f"{uint} {field_index}"))
    label_at += position - function_at

    position = _first_body_position(sequence, label_at)
    vi = fresh("vi")
    view_offset = fresh("view_offset")
    data_offset = fresh("data_offset")
    position = emit(position, Instruction(vi, "OpLoad", f"{uint} {view_index}"))
    position = emit(position, Instruction(view_offset, "OpIMul", f"{uint} {vi} {layout.uint_constant(4)}"))
    position = emit(position, Instruction(data_offset, "OpIAdd", f"{uint} {shader_data_begin} {view_offset}"))
    row_indices = [fresh(f"i_f{field_index}_{row}") for row in range(ROW_COUNT)]
    if field_index > 0:
        field_rows = [fresh(f"fadd_{row}") for row in range(ROW_COUNT)]
        for row, name in enumerate(field_rows):
            position = emit(position, Instruction(name, "OpIAdd", f"{uint} {layout.uint_constant(row)} {f_idx}"))
        for name, field_row in zip(row_indices, field_rows):
            position = emit(position, Instruction(name, "OpIAdd", f"{uint} {data_offset} {field_row}"))
    else:
        for row, name in enumerate(row_indices):
            position = emit(position, Instruction(name, "OpIAdd", f"{uint} {data_offset} {layout.uint_constant(row)}"))

    _check_defined_before(sequence, changes.inserted)

    # Targets are matched before rewriting so row k+1 never sees row k's result.
    targets: Dict[int, str] = {}
    for row, name in enumerate(row_indices):
        expected = layout.access_operands(layout.row_constant(field_index + row))
        for idx, instruction in enumerate(sequence):
            if instruction.opcode == "OpAccessChain" and instruction.operands == expected:
                targets[idx] = name
    for idx, name in sorted(targets.items()):
        original = sequence[idx]
        relocated = original.with_operands(layout.access_operands(name))
        sequence.replace(idx, relocated)
        changes.rewritten.append((relocated, original))
    logger.debug(
        "relocated %d matrix row accesses (field %d, base offset %d)", len(targets), field_index, base_offset
    )
    return row_indices


def patch_vertex_shader(
    sequence: InstructionSequence,
    field_index: int,
    base_offset: int,
    layout: Optional[MatrixLayout] = None,
) -> PatchReport:
    report = PatchReport()
    report.view_index = sequence.fresh_name(VIEW_INDEX_NAME)
    report.capability_added = add_multiview_capability(sequence, report.changes)
    rewrite_entry_point(sequence, True, report.view_index, report.changes)
    report.row_indices = patch_matrix_accesses(
        sequence,
        field_index,
        base_offset,
        layout=layout,
        view_index=report.view_index,
        changes=report.changes,
    )
    return report


def _entry_label(sequence: InstructionSequence) -> int:
    entry_at = sequence.find("OpEntryPoint")
    function_at = None
    if entry_at is not None:
        match = _ENTRY_POINT_RE.match(sequence[entry_at].operands)
        if match:
            function_at = sequence.index_of(match.group(2))
    if function_at is None or sequence[function_at].opcode != "OpFunction":
        function_at = sequence.first_function
    if function_at is None:
        raise PreconditionError("module has no function body")
    label_at = sequence.find("OpLabel", start=function_at)
    end_at = sequence.find("OpFunctionEnd", start=function_at)
    if label_at is None or (end_at is not None and label_at > end_at):
        raise PreconditionError("entry function has no OpLabel")
    return label_at


def _declarations_end(sequence: InstructionSequence, label_at: int) -> int:
    # Module declarations end at the first OpFunction, wherever the entry function sits.
    first = sequence.first_function
    if first is None or first > label_at:
        raise PreconditionError("OpLabel outside any function")
    return first


def _input_pointer(sequence: InstructionSequence, uint: str, end: int) -> Optional[str]:
    for idx in range(end):
        instruction = sequence[idx]
        if instruction.opcode == "OpTypePointer" and instruction.operands == f"Input {uint}":
            return instruction.result
    return None


def _first_body_position(sequence: InstructionSequence, label_at: int) -> int:
    position = label_at + 1
    while position < len(sequence) and sequence[position].opcode in {"OpVariable", "OpLine", "OpNoLine"}:
        position += 1
    return position


def _check_defined_before(sequence: InstructionSequence, inserted: List[Instruction]) -> None:
    for instruction in inserted:
        if instruction.opcode in {"OpDecorate", "OpEntryPoint", "OpCapability"}:
            continue
        position = sequence.index_of(instruction.result)
        for value in instruction.operand_ids():
            defined_at = sequence.index_of(value)
            if defined_at is None or defined_at >= position:
                raise PreconditionError(f"{instruction.result} uses {value} before it is defined")
