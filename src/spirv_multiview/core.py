from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
import re
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from rich.text import Text

from .errors import MalformedInstructionError, PreconditionError


_INSTRUCTION_RE = re.compile(r"^\s*(?:(%[^\s=]+)\s*=\s*)?(Op[A-Za-z0-9_]+)(?:\s+(.*?))?\s*$", re.DOTALL)
_STRING_LITERAL_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')
_ID_RE = re.compile(r"%[A-Za-z0-9_.]+")
COMMENT_MARKER = ";"


class Section(IntEnum):
    CAPABILITY = 0
    EXTENSION = 1
    EXT_INST_IMPORT = 2
    MEMORY_MODEL = 3
    ENTRY_POINT = 4
    EXECUTION_MODE = 5
    DEBUG = 6
    ANNOTATION = 7
    DECLARATION = 8
    FUNCTION = 9


_FIXED_SECTIONS: Dict[str, Section] = {
    "OpCapability": Section.CAPABILITY,
    "OpExtension": Section.EXTENSION,
    "OpExtInstImport": Section.EXT_INST_IMPORT,
    "OpMemoryModel": Section.MEMORY_MODEL,
    "OpEntryPoint": Section.ENTRY_POINT,
    "OpExecutionMode": Section.EXECUTION_MODE,
    "OpExecutionModeId": Section.EXECUTION_MODE,
    "OpString": Section.DEBUG,
    "OpSourceExtension": Section.DEBUG,
    "OpSource": Section.DEBUG,
    "OpSourceContinued": Section.DEBUG,
    "OpName": Section.DEBUG,
    "OpMemberName": Section.DEBUG,
    "OpModuleProcessed": Section.DEBUG,
    "OpDecorate": Section.ANNOTATION,
    "OpDecorateId": Section.ANNOTATION,
    "OpDecorateString": Section.ANNOTATION,
    "OpMemberDecorate": Section.ANNOTATION,
    "OpMemberDecorateString": Section.ANNOTATION,
    "OpDecorationGroup": Section.ANNOTATION,
    "OpGroupDecorate": Section.ANNOTATION,
    "OpGroupMemberDecorate": Section.ANNOTATION,
}

# Legal both among module declarations and inside function bodies.
_POSITIONAL_OPCODES = {"OpVariable", "OpUndef", "OpLine", "OpNoLine", "OpExtInst"}

_DECLARATION_PREFIXES = ("OpType", "OpConstant", "OpSpecConstant")


@dataclass(frozen=True)
class Instruction:
    result: Optional[str]
    opcode: str
    operands: str = ""

    def text(self) -> str:
        body = f"{self.opcode} {self.operands}" if self.operands else self.opcode
        if self.result:
            return f"{self.result} = {body}"
        return body

    def operand_ids(self) -> List[str]:
        without_strings = _STRING_LITERAL_RE.sub("", self.operands)
        return _ID_RE.findall(without_strings)

    def string_literal(self) -> Optional[str]:
        match = _STRING_LITERAL_RE.search(self.operands)
        if not match:
            return None
        return match.group(1)

    def with_operands(self, operands: str) -> "Instruction":
        return Instruction(result=self.result, opcode=self.opcode, operands=operands)


def parse_instruction(line: str) -> Optional[Instruction]:
    """Parse one line of disassembly; comments and blank lines yield None."""
    stripped = line.strip()
    if not stripped or stripped.startswith(COMMENT_MARKER):
        return None
    match = _INSTRUCTION_RE.match(stripped)
    if not match:
        raise MalformedInstructionError(f"cannot parse instruction: {stripped!r}")
    result, opcode, operands = match.groups()
    return Instruction(result=result, opcode=opcode, operands=operands or "")


def _has_open_quote(text: str) -> bool:
    inside = False
    escaped = False
    for char in text:
        if escaped:
            escaped = False
        elif char == "\\" and inside:
            escaped = True
        elif char == '"':
            inside = not inside
    return inside


def opcode_section(opcode: str) -> Optional[Section]:
    """Section an opcode always belongs to, or None when it depends on position."""
    if opcode in _FIXED_SECTIONS:
        return _FIXED_SECTIONS[opcode]
    if opcode in _POSITIONAL_OPCODES:
        return None
    if opcode.startswith(_DECLARATION_PREFIXES):
        return Section.DECLARATION
    return Section.FUNCTION


class InstructionSequence:
    """Ordered instructions of one module with a result-name index."""

    def __init__(self, instructions: Iterable[Instruction] = ()) -> None:
        self._instructions: List[Instruction] = list(instructions)
        self._names: Dict[str, int] = {}
        self._first_function: Optional[int] = None
        self._reindex()

    @classmethod
    def from_text(cls, text: str) -> "InstructionSequence":
        instructions = []
        pending: List[str] = []
        for line in text.splitlines():
            # A string literal with embedded newlines continues on the next lines.
            if pending or not line.lstrip().startswith(COMMENT_MARKER):
                pending.append(line)
                if _has_open_quote("\n".join(pending)):
                    continue
                line = "\n".join(pending)
                pending = []
            instruction = parse_instruction(line)
            if instruction is not None:
                instructions.append(instruction)
        if pending:
            raise MalformedInstructionError(f"unterminated string literal: {pending[0].strip()!r}")
        return cls(instructions)

    def to_text(self) -> str:
        return "".join(f"{line}\n" for line in self.lines())

    def lines(self) -> List[str]:
        return [instruction.text() for instruction in self._instructions]

    def __len__(self) -> int:
        return len(self._instructions)

    def __iter__(self) -> Iterator[Instruction]:
        return iter(self._instructions)

    def __getitem__(self, position: int) -> Instruction:
        return self._instructions[position]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, InstructionSequence):
            return NotImplemented
        return self._instructions == other._instructions

    def find(
        self,
        opcode: str,
        start: int = 0,
        predicate: Optional[Callable[[Instruction], bool]] = None,
    ) -> Optional[int]:
        for position in range(max(start, 0), len(self._instructions)):
            instruction = self._instructions[position]
            if instruction.opcode != opcode:
                continue
            if predicate is None or predicate(instruction):
                return position
        return None

    def index_of(self, name: str) -> Optional[int]:
        return self._names.get(name)

    def defines(self, name: str) -> bool:
        return name in self._names

    def result_names(self) -> Set[str]:
        return set(self._names)

    def fresh_name(self, base: str, reserved: Iterable[str] = ()) -> str:
        taken = set(reserved)
        stem = base.lstrip("%")
        candidate = f"%{stem}"
        suffix = 1
        while candidate in self._names or candidate in taken:
            candidate = f"%{stem}_{suffix}"
            suffix += 1
        return candidate

    @property
    def first_function(self) -> Optional[int]:
        return self._first_function

    def section_of(self, position: int) -> Section:
        return self._section_at(position, self._instructions[position].opcode)

    def insert(self, position: int, instruction: Instruction) -> None:
        if position < 0 or position > len(self._instructions):
            raise IndexError(f"insert position {position} out of range")
        self._check_unbound(instruction)
        self._check_section_order(position, instruction)
        self._instructions.insert(position, instruction)
        self._reindex()

    def replace(self, position: int, instruction: Instruction) -> None:
        current = self._instructions[position]
        if instruction.result != current.result:
            self._check_unbound(instruction)
        self._instructions[position] = instruction
        self._reindex()

    def _check_unbound(self, instruction: Instruction) -> None:
        if instruction.result and instruction.result in self._names:
            raise PreconditionError(f"result name {instruction.result} is already defined")

    def _section_at(self, position: int, opcode: str) -> Section:
        if self._first_function is not None and position >= self._first_function:
            return Section.FUNCTION
        section = opcode_section(opcode)
        if section is None:
            return Section.DECLARATION
        return section

    def _check_section_order(self, position: int, instruction: Instruction) -> None:
        new_section = opcode_section(instruction.opcode)
        if new_section is None:
            inside_function = self._first_function is not None and position > self._first_function
            new_section = Section.FUNCTION if inside_function else Section.DECLARATION
        if position > 0:
            previous = self.section_of(position - 1)
            if previous > new_section:
                raise PreconditionError(
                    f"{instruction.opcode} cannot follow a {previous.name.lower()} instruction"
                )
        if position < len(self._instructions):
            following = self.section_of(position)
            if new_section > following:
                raise PreconditionError(
                    f"{instruction.opcode} cannot precede a {following.name.lower()} instruction"
                )

    def _reindex(self) -> None:
        names: Dict[str, int] = {}
        first_function = None
        for idx, instruction in enumerate(self._instructions):
            if instruction.opcode == "OpFunction" and first_function is None:
                first_function = idx
            if not instruction.result:
                continue
            if instruction.result in names:
                raise MalformedInstructionError(f"result name {instruction.result} defined twice")
            names[instruction.result] = idx
        self._names = names
        self._first_function = first_function


@dataclass(frozen=True)
class RenderedLine:
    source_index: int
    display: str
    status: str = ""


@dataclass
class RenderOptions:
    show_line_numbers: bool = False
    show_sections: bool = False
    align_results: bool = True
    result_column: int = 20


@dataclass
class ChangeSet:
    inserted: List[Instruction] = field(default_factory=list)
    # (new, original) pairs, matched by identity.
    rewritten: List[Tuple[Instruction, Instruction]] = field(default_factory=list)

    def original_of(self, instruction: Instruction) -> Optional[Instruction]:
        for new, original in self.rewritten:
            if new is instruction:
                return original
        return None

    def status_of(self, instruction: Instruction) -> str:
        if self.original_of(instruction) is not None:
            return "rewritten"
        if any(instruction is added for added in self.inserted):
            return "inserted"
        return ""


class SequenceView:
    def __init__(
        self,
        sequence: InstructionSequence,
        changes: Optional[ChangeSet] = None,
        options: Optional[RenderOptions] = None,
    ) -> None:
        self.sequence = sequence
        self.changes = changes or ChangeSet()
        self.options = options or RenderOptions()
        self.rendered: List[RenderedLine] = []
        self._uses: Dict[str, List[int]] = {}

    def render(self) -> List[RenderedLine]:
        rendered: List[RenderedLine] = []
        for idx, instruction in enumerate(self.sequence):
            display = _instruction_display(instruction, self.options)
            if self.options.show_sections:
                display = f"{self.sequence.section_of(idx).name.lower():<15} {display}"
            if self.options.show_line_numbers:
                display = f"{idx + 1:5d} | {display}"
            rendered.append(
                RenderedLine(source_index=idx, display=display, status=self.changes.status_of(instruction))
            )
        self.rendered = rendered
        return rendered

    def changed_indices(self) -> List[int]:
        if not self.rendered:
            self.render()
        return [line.source_index for line in self.rendered if line.status]

    def uses_of(self, name: str) -> List[int]:
        self._ensure_uses()
        return list(self._uses.get(name, []))

    def details_for_index(self, index: int) -> Text:
        if index < 0 or index >= len(self.sequence):
            return Text("")
        instruction = self.sequence[index]
        status = self.changes.status_of(instruction)
        parts: List[str] = []
        parts.append(f"Instruction {index + 1}")
        parts.append("")
        parts.append(instruction.text())
        parts.append("")
        parts.append("Section")
        parts.append(self.sequence.section_of(index).name.lower())
        if status:
            parts.append("")
            parts.append("Change")
            parts.append(status)
        ids = instruction.operand_ids()
        if ids:
            parts.append("")
            parts.append("Operands")
            for value in ids:
                position = self.sequence.index_of(value)
                where = f"line {position + 1}" if position is not None else "undefined"
                parts.append(f"{value}  ({where})")
        if instruction.result:
            uses = self.uses_of(instruction.result)
            parts.append("")
            parts.append("Uses")
            if uses:
                parts.extend(f"line {use + 1}: {self.sequence[use].text()}" for use in uses)
            else:
                parts.append("(none)")
        if status == "rewritten":
            parts.append("")
            parts.append("Original instruction")
            parts.append(self.changes.original_of(instruction).text())
        return _highlight_details("\n".join(parts))

    def _ensure_uses(self) -> None:
        if self._uses:
            return
        uses: Dict[str, List[int]] = {}
        for idx, instruction in enumerate(self.sequence):
            for value in instruction.operand_ids():
                uses.setdefault(value, []).append(idx)
        self._uses = uses


def _instruction_display(instruction: Instruction, options: RenderOptions) -> str:
    if not options.align_results:
        return instruction.text()
    body = f"{instruction.opcode} {instruction.operands}" if instruction.operands else instruction.opcode
    if instruction.result:
        return f"{instruction.result:>{options.result_column}} = {body}"
    return f"{'':>{options.result_column}}   {body}"


def _highlight_details(text: str) -> Text:
    if not text:
        return Text("")
    rendered = Text(text)
    section_titles = {"Section", "Change", "Operands", "Uses", "Original instruction"}
    offset = 0
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if stripped in section_titles or stripped.startswith("Instruction "):
            rendered.stylize("bold white on grey23", offset, offset + len(line))
        elif stripped == "inserted":
            rendered.stylize("green", offset, offset + len(line))
        elif stripped == "rewritten":
            rendered.stylize("yellow", offset, offset + len(line))
        else:
            for match in _STRING_LITERAL_RE.finditer(line):
                rendered.stylize("magenta", offset + match.start(), offset + match.end())
            for match in _ID_RE.finditer(line):
                rendered.stylize("cyan", offset + match.start(), offset + match.end())
            for match in re.finditer(r"\bOp[A-Za-z0-9_]+", line):
                rendered.stylize("orange1", offset + match.start(), offset + match.end())
        offset += len(line)
    return rendered
