"""Instruction and Operand definitions"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..common import *

if TYPE_CHECKING:
    from .instruction_table import InstructionDescriptor


class OperandKind(IntEnum2):
    """What an operand value refers to"""
    IMM         = 0     # plain integer
    LABEL       = 1     # absolute bytecode offset (already resolved)
    CONST       = 2     # constant pool index
    ATOM        = 3     # atom id
    LOC         = 4     # local variable index
    ARG         = 5     # argument index
    VAR_REF     = 6     # closure variable index
    ARGC        = 7     # argument count of a call


@dataclass
class Operand:
    """Decoded operand"""
    kind        : OperandKind
    value       : int
    raw         : int | None = None     # encoded value for labels (relative displacement)
    implicit    : bool = False          # encoded in the opcode (get_loc0, push_3, call1, ...)


@dataclass
class Instruction:
    """Decoded instruction"""
    offset        : int                                             # Offset in bytecode
    opcode        : int                                             # Raw opcode value
    descriptor    : 'InstructionDescriptor'                         # Instruction descriptor from table
    operands      : list[Operand] = field(default_factory = list)
    size          : int = 0                                         # Instruction size in bytes
    raw           : bytes = b''

    @property
    def mnemonic(self) -> str:
        return self.descriptor.mnemonic

    @property
    def info(self):
        return self.descriptor.info

    @property
    def next_offset(self) -> int:
        return self.offset + self.size

    @property
    def is_unknown(self) -> bool:
        return self.descriptor.is_unknown

    def operand(self, kind: OperandKind) -> Operand | None:
        for op in self.operands:
            if op.kind == kind:
                return op
        return None

    def _value(self, kind: OperandKind) -> int | None:
        op = self.operand(kind)
        return op.value if op is not None else None

    @property
    def target(self) -> int | None:
        """Absolute jump target"""
        return self._value(OperandKind.LABEL)

    @property
    def atom(self) -> int | None:
        return self._value(OperandKind.ATOM)

    @property
    def const_index(self) -> int | None:
        return self._value(OperandKind.CONST)

    @property
    def var_index(self) -> int | None:
        """Slot index of loc/arg/var_ref instructions"""
        for op in self.operands:
            if op.kind in (OperandKind.LOC, OperandKind.ARG, OperandKind.VAR_REF):
                return op.value
        return None

    @property
    def argc(self) -> int | None:
        return self._value(OperandKind.ARGC)

    @property
    def imm(self) -> int | None:
        return self._value(OperandKind.IMM)

    def __str__(self) -> str:
        ops = ', '.join(str(op.value) for op in self.operands if not op.implicit)
        return f'{self.mnemonic}({ops})' if ops else self.mnemonic
