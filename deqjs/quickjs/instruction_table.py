"""
Instruction table interface and descriptor
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..common import *
from .basic_block import BranchKind
from .instruction import Instruction, Operand, OperandKind
from .optable import *
from .reader import BinaryReader


@dataclass
class BranchTarget:
    """Branch target information"""
    kind   : BranchKind
    offset : int

    @classmethod
    def unconditional(cls, offset: int) -> 'BranchTarget':
        return cls(BranchKind.UNCONDITIONAL, offset)

    @classmethod
    def true_branch(cls, offset: int) -> 'BranchTarget':
        return cls(BranchKind.TRUE, offset)

    @classmethod
    def false_branch(cls, offset: int) -> 'BranchTarget':
        return cls(BranchKind.FALSE, offset)


class InstructionFlags(IntFlag2):
    """Instruction flags (can be combined with bitwise OR)"""
    NONE        = 0
    END_BLOCK   = 1 << 0    # Terminates a basic block
    JUMP        = 1 << 1    # Unconditional jump
    BRANCH      = 1 << 2    # Conditional jump
    NO_RETURN   = 1 << 3    # No fallthrough (return, throw, tail call)
    CATCH       = 1 << 4    # Pushes a catch marker, target is the handler
    GOSUB       = 1 << 5    # Calls a finally block


JUMP_OPS        = ('goto', 'goto8', 'goto16')
BRANCH_FALSE    = ('if_false', 'if_false8')
BRANCH_TRUE     = ('if_true', 'if_true8')
NO_RETURN_OPS   = ('return', 'return_undef', 'return_async', 'throw', 'throw_error', 'ret',
                   'tail_call', 'tail_call_method')


def _flags_for(info: OpcodeInfo) -> InstructionFlags:
    name = info.name
    if name in JUMP_OPS:
        return InstructionFlags.END_BLOCK | InstructionFlags.JUMP

    if name in BRANCH_FALSE or name in BRANCH_TRUE:
        return InstructionFlags.END_BLOCK | InstructionFlags.BRANCH

    if name in NO_RETURN_OPS:
        return InstructionFlags.END_BLOCK | InstructionFlags.NO_RETURN

    if name == 'catch':
        return InstructionFlags.END_BLOCK | InstructionFlags.CATCH

    if name == 'gosub':
        return InstructionFlags.END_BLOCK | InstructionFlags.GOSUB

    if info.has_label:
        # with_* family: jumps when the binding is found in the with object
        return InstructionFlags.END_BLOCK | InstructionFlags.BRANCH

    return InstructionFlags.NONE


@dataclass
class InstructionDescriptor:
    """Descriptor for an instruction in the instruction table"""
    info    : OpcodeInfo
    flags   : InstructionFlags = InstructionFlags.NONE

    @property
    def opcode(self) -> int:
        return self.info.opcode

    @property
    def mnemonic(self) -> str:
        return self.info.name

    @property
    def is_unknown(self) -> bool:
        return self.info is UNKNOWN_OPCODE

    def is_end_block(self) -> bool:
        return bool(self.flags & InstructionFlags.END_BLOCK)

    def get_branch_targets(self, inst: Instruction) -> list[BranchTarget]:
        '''
        Successor offsets of a block ending with `inst`

        if_false jumps when the condition is false, so its target is the FALSE
        edge and the fallthrough the TRUE edge. catch and gosub fall through
        and add an exception/finally edge.
        '''
        flags = self.flags
        target = inst.target
        fallthrough = inst.next_offset

        if flags & InstructionFlags.JUMP:
            return [BranchTarget.unconditional(target)]

        if flags & InstructionFlags.NO_RETURN:
            return []

        if flags & InstructionFlags.BRANCH:
            if self.mnemonic in BRANCH_FALSE:
                return [BranchTarget.true_branch(fallthrough), BranchTarget.false_branch(target)]
            return [BranchTarget.true_branch(target), BranchTarget.false_branch(fallthrough)]

        if flags & InstructionFlags.CATCH:
            return [BranchTarget.unconditional(fallthrough), BranchTarget(BranchKind.EXCEPTION, target)]

        if flags & InstructionFlags.GOSUB:
            return [BranchTarget.unconditional(fallthrough), BranchTarget(BranchKind.FINALLY, target)]

        return [BranchTarget.unconditional(fallthrough)]


UNKNOWN_DESCRIPTOR = InstructionDescriptor(UNKNOWN_OPCODE)


class InstructionTable(ABC):
    """
    Abstract interface for instruction tables.

    Subclasses implement version specific opcode lookup and operand decoding.
    """

    @abstractmethod
    def read_opcode(self, reader: BinaryReader) -> int:
        """Read opcode from the reader"""
        pass

    @abstractmethod
    def get_descriptor(self, opcode: int) -> InstructionDescriptor | None:
        """Get instruction descriptor for opcode, None when unknown"""
        pass

    @abstractmethod
    def read_operands(self, reader: BinaryReader, inst: Instruction) -> list[Operand]:
        """
        Read operands for instruction.

        Args:
            reader: Reader positioned after opcode
            inst: Instruction being decoded

        Returns:
            List of operands
        """
        pass

    def decode_instruction(self, reader: BinaryReader, offset: int) -> Instruction:
        """
        Decode a complete instruction.

        Raises TruncatedInputError when the operands run past the end of the
        bytecode; unknown opcodes decode as a one byte UNKNOWN instruction.
        """
        opcode = self.read_opcode(reader)
        descriptor = self.get_descriptor(opcode)

        inst = Instruction(
            offset      = offset,
            opcode      = opcode,
            descriptor  = descriptor or UNKNOWN_DESCRIPTOR,
            operands    = [],
            size        = 0,
        )

        if descriptor is not None:
            needed = descriptor.info.size - 1
            if needed > reader.remaining:
                raise TruncatedInputError(offset, descriptor.info.size, reader.remaining + 1, descriptor.mnemonic)

            inst.operands = self.read_operands(reader, inst)

        inst.size = reader.position - offset
        inst.raw = reader.data[offset:reader.position]
        return inst


def _implicit_index(name: str) -> int:
    '''Trailing digit of short opcodes (get_loc2, call1, push_7, push_minus1)'''
    if name.endswith('minus1'):
        return -1
    return int(name[-1])


class QuickJSInstructionTable(InstructionTable):
    """Instruction table over an OpcodeTable"""

    def __init__(self, opcodes: OpcodeTable):
        self.opcodes = opcodes
        self.descriptors: dict[int, InstructionDescriptor] = {
            info.opcode: InstructionDescriptor(info, _flags_for(info)) for info in opcodes.infos
        }

    def read_opcode(self, reader: BinaryReader) -> int:
        return reader.read_u8()

    def get_descriptor(self, opcode: int) -> InstructionDescriptor | None:
        return self.descriptors.get(opcode)

    def descriptor_by_name(self, name: str) -> InstructionDescriptor:
        return self.descriptors[self.opcodes.opcode(name)]

    def read_operands(self, reader: BinaryReader, inst: Instruction) -> list[Operand]:
        r = reader
        pc = inst.offset
        info = inst.descriptor.info

        def label(base: int, rel: int) -> Operand:
            return Operand(OperandKind.LABEL, base + rel, raw = rel)

        match info.fmt:
            case OpFormat.NONE:
                return []

            case OpFormat.NONE_INT:
                return [Operand(OperandKind.IMM, _implicit_index(info.name), implicit = True)]

            case OpFormat.NONE_LOC:
                if info.name == 'get_loc0_loc1':
                    return [Operand(OperandKind.LOC, 0, implicit = True), Operand(OperandKind.LOC, 1, implicit = True)]
                return [Operand(OperandKind.LOC, _implicit_index(info.name), implicit = True)]

            case OpFormat.NONE_ARG:
                return [Operand(OperandKind.ARG, _implicit_index(info.name), implicit = True)]

            case OpFormat.NONE_VAR_REF:
                return [Operand(OperandKind.VAR_REF, _implicit_index(info.name), implicit = True)]

            case OpFormat.NPOPX:
                return [Operand(OperandKind.ARGC, _implicit_index(info.name), implicit = True)]

            case OpFormat.U8:
                return [Operand(OperandKind.IMM, r.read_u8())]

            case OpFormat.I8:
                value = r.read_u8()
                return [Operand(OperandKind.IMM, value - 256 if value & 0x80 else value)]

            case OpFormat.LOC8:
                return [Operand(OperandKind.LOC, r.read_u8())]

            case OpFormat.CONST8:
                return [Operand(OperandKind.CONST, r.read_u8())]

            case OpFormat.LABEL8:
                rel = r.read_u8()
                return [label(pc + 1, rel - 256 if rel & 0x80 else rel)]

            case OpFormat.U16:
                return [Operand(OperandKind.IMM, r.read_u16())]

            case OpFormat.I16:
                return [Operand(OperandKind.IMM, r.read_i16())]

            case OpFormat.LABEL16:
                return [label(pc + 1, r.read_i16())]

            case OpFormat.NPOP:
                return [Operand(OperandKind.ARGC, r.read_u16())]

            case OpFormat.NPOP_U16:
                return [Operand(OperandKind.ARGC, r.read_u16()), Operand(OperandKind.IMM, r.read_u16())]

            case OpFormat.LOC:
                return [Operand(OperandKind.LOC, r.read_u16())]

            case OpFormat.ARG:
                return [Operand(OperandKind.ARG, r.read_u16())]

            case OpFormat.VAR_REF:
                return [Operand(OperandKind.VAR_REF, r.read_u16())]

            case OpFormat.U32:
                return [Operand(OperandKind.IMM, r.read_u32())]

            case OpFormat.U32X2:
                return [Operand(OperandKind.IMM, r.read_u32()), Operand(OperandKind.IMM, r.read_u32())]

            case OpFormat.I32:
                return [Operand(OperandKind.IMM, r.read_i32())]

            case OpFormat.CONST:
                return [Operand(OperandKind.CONST, r.read_u32())]

            case OpFormat.LABEL:
                return [label(pc + 1, r.read_i32())]

            case OpFormat.ATOM:
                return [Operand(OperandKind.ATOM, r.read_u32())]

            case OpFormat.ATOM_U8:
                return [Operand(OperandKind.ATOM, r.read_u32()), Operand(OperandKind.IMM, r.read_u8())]

            case OpFormat.ATOM_U16:
                return [Operand(OperandKind.ATOM, r.read_u32()), Operand(OperandKind.IMM, r.read_u16())]

            case OpFormat.ATOM_LABEL_U8:
                return [Operand(OperandKind.ATOM, r.read_u32()), label(pc + 5, r.read_i32()),
                        Operand(OperandKind.IMM, r.read_u8())]

            case OpFormat.ATOM_LABEL_U16:
                return [Operand(OperandKind.ATOM, r.read_u32()), label(pc + 5, r.read_i32()),
                        Operand(OperandKind.IMM, r.read_u16())]

            case OpFormat.LABEL_U16:
                return [label(pc + 1, r.read_i32()), Operand(OperandKind.IMM, r.read_u16())]

            case _:
                raise ValueError(f'unhandled operand format: {info.fmt}')
