'''Error taxonomy and non-fatal warning records'''

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .enum import IntEnum2

if TYPE_CHECKING:
    from ..quickjs.container import Module


class DecompileError(Exception):
    '''Base class for every error raised by the decompiler core'''


class FormatError(DecompileError):
    '''Bad signature/version or undecodable container structure (fatal for the run)'''


class UnsupportedTagError(FormatError):
    '''Serialized value tag that cannot be decoded structurally'''

    def __init__(self, tag: int, offset: int):
        super().__init__(f'unsupported tag: {tag} at offset {offset}')
        self.tag = tag
        self.offset = offset


class TruncatedInputError(DecompileError):
    '''A declared length exceeds the remaining buffer

    `partial` carries the module as far as it was parsed: functions decoded
    before the failure are preserved there.
    '''

    def __init__(self, offset: int, wanted: int, remaining: int, what: str = 'data'):
        super().__init__(f'truncated input at offset {offset}: {what} needs {wanted} bytes, {remaining} remaining')
        self.offset     = offset
        self.wanted     = wanted
        self.remaining  = remaining
        self.what       = what
        self.partial: 'Module | None' = None


class InvalidReferenceError(DecompileError):
    '''Operand refers to a constant, atom, slot or offset out of range for its function'''

    def __init__(self, kind: str, index: int, limit: int, offset: int | None = None):
        where = f' at pc {offset}' if offset is not None else ''
        super().__init__(f'invalid {kind} index {index}{where} (limit {limit})')
        self.kind   = kind
        self.index  = index
        self.limit  = limit
        self.offset = offset


class StackMismatchError(DecompileError):
    '''Stack states of predecessors disagree at a block entry'''

    def __init__(self, offset: int, depths: list[int], reason: str | None = None):
        reason = reason or f'predecessors leave {sorted(set(depths))}'
        super().__init__(f'stack depth mismatch at {offset}: {reason}')
        self.offset = offset
        self.depths = depths


class StructuringBudgetExceeded(DecompileError):
    '''Raised internally when structuring runs out of attempts'''


# ============================================================================
# Warnings
# ============================================================================

class WarningKind(IntEnum2):
    UNKNOWN_OPCODE      = 0
    STACK_MISMATCH      = 1
    UNSTRUCTURED_REGION = 2
    INVALID_REFERENCE   = 3
    UNREACHABLE_CODE    = 4


@dataclass
class DecompileWarning:
    '''Non-fatal diagnostic attached to one function'''
    kind        : WarningKind
    message     : str
    function    : str        = ''
    offset      : int | None = None

    def __str__(self) -> str:
        where = f' @{self.offset}' if self.offset is not None else ''
        return f'{self.kind.name.lower()}{where}: {self.message}'


class UnknownOpcodeWarning(DecompileWarning):
    '''Opcode outside the known table, decoded as an Unknown placeholder'''

    def __init__(self, opcode: int, offset: int, detail: str = ''):
        message = f'unknown opcode 0x{opcode:02x}'
        if detail:
            message = f'{message} ({detail})'
        super().__init__(WarningKind.UNKNOWN_OPCODE, message, offset = offset)
        self.opcode = opcode


class UnstructuredRegionWarning(DecompileWarning):
    '''Region emitted as labels and gotos'''

    def __init__(self, offset: int | None, reason: str):
        super().__init__(WarningKind.UNSTRUCTURED_REGION, f'unstructured region: {reason}', offset = offset)


def warning_from_error(error: DecompileError) -> DecompileWarning:
    '''Convert a per-function error into the warning surfaced with the output'''
    match error:
        case StackMismatchError():
            return DecompileWarning(WarningKind.STACK_MISMATCH, f'{error}; emitted raw listing', offset = error.offset)

        case InvalidReferenceError():
            return DecompileWarning(WarningKind.INVALID_REFERENCE, f'{error}; emitted raw listing', offset = error.offset)

        case _:
            return DecompileWarning(WarningKind.UNSTRUCTURED_REGION, f'{error}; emitted raw listing')
