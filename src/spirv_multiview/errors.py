"""Exception hierarchy for the multiview patcher."""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .patcher import ShaderFlavor


class MultiviewPatchError(Exception):
    """Base class for every failure that aborts a patch invocation."""

    def __init__(self, message: str, diagnostics: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.diagnostics: List[str] = list(diagnostics or [])

    def __str__(self) -> str:
        message = super().__str__()
        if not self.diagnostics:
            return message
        return message + "\n" + "\n".join(f"  {line}" for line in self.diagnostics)


class MalformedInstructionError(MultiviewPatchError):
    """Raised when a line of disassembly cannot be split into an instruction."""


class ClassificationError(MultiviewPatchError):
    """Raised when no shader flavor marker string is present."""


class UnsupportedFlavorError(MultiviewPatchError):
    """Raised when the shader flavor is not accepted by the requested operation."""

    def __init__(self, flavor: ShaderFlavor, operation: str) -> None:
        super().__init__(f"{operation} does not support {flavor.value} shaders")
        self.flavor = flavor
        self.operation = operation


class PreconditionError(MultiviewPatchError):
    """Raised when the module lacks something a patch step relies on."""


class ToolchainError(MultiviewPatchError):
    """Raised when a SPIRV-Tools program fails."""

    def __init__(
        self,
        message: str,
        tool: str = "",
        returncode: Optional[int] = None,
        diagnostics: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message, diagnostics)
        self.tool = tool
        self.returncode = returncode


class ToolNotFoundError(ToolchainError):
    pass


class DisassemblyError(ToolchainError):
    pass


class AssemblyError(ToolchainError):
    pass


class OptimizationError(ToolchainError):
    pass


class ValidationError(ToolchainError):
    pass


__all__ = [
    "MultiviewPatchError",
    "MalformedInstructionError",
    "ClassificationError",
    "UnsupportedFlavorError",
    "PreconditionError",
    "ToolchainError",
    "ToolNotFoundError",
    "DisassemblyError",
    "AssemblyError",
    "OptimizationError",
    "ValidationError",
]
