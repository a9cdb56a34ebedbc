'''
Linear sweep decoder: bytecode of one function to an instruction list
'''

from dataclasses import dataclass, field

from ..common import *
from .container import FormatVersion, FunctionInfo, Module
from .instruction import Instruction, Operand, OperandKind
from .instruction_table import UNKNOWN_DESCRIPTOR, QuickJSInstructionTable
from .optable import CURRENT_OPCODES
from .optable_v1 import LEGACY_OPCODES
from .reader import BinaryReader

logger = logging.getLogger(__name__)

CURRENT_INSTRUCTION_TABLE = QuickJSInstructionTable(CURRENT_OPCODES)
LEGACY_INSTRUCTION_TABLE = QuickJSInstructionTable(LEGACY_OPCODES)


def instruction_table_for(version: FormatVersion) -> QuickJSInstructionTable:
    return LEGACY_INSTRUCTION_TABLE if version == FormatVersion.LEGACY else CURRENT_INSTRUCTION_TABLE


@dataclass
class DecodedFunction:
    function        : FunctionInfo
    instructions    : list[Instruction]             = field(default_factory = list)
    warnings        : list[DecompileWarning]        = field(default_factory = list)

    def __post_init__(self):
        self.by_offset = {inst.offset: inst for inst in self.instructions}

    def at(self, offset: int) -> Instruction | None:
        return self.by_offset.get(offset)


class Decoder:
    '''Decodes every instruction of a function's bytecode

    Undecodable bytes never stop the sweep: an unknown opcode consumes one
    byte and an instruction whose operands run past the end consumes the rest
    of the stream. Both produce an UNKNOWN instruction and a warning.
    '''

    def __init__(self, table: QuickJSInstructionTable, module: Module | None = None):
        self.table = table
        self.module = module

    def decode(self, func: FunctionInfo) -> DecodedFunction:
        reader = BinaryReader(func.bytecode)
        instructions = []
        warnings = []
        name = func.display_name()

        while not reader.at_end():
            offset = reader.position
            try:
                inst = self.table.decode_instruction(reader, offset)

            except TruncatedInputError as e:
                reader.position = len(func.bytecode)
                inst = self._unknown(func.bytecode, offset, reader.position)
                warnings.append(UnknownOpcodeWarning(inst.opcode, offset, f'truncated: {e.what} needs {e.wanted} bytes'))

            else:
                if inst.is_unknown:
                    warnings.append(UnknownOpcodeWarning(inst.opcode, offset))

            instructions.append(inst)

        for w in warnings:
            w.function = name
            logger.debug('%s: %s', name or '<anonymous>', w)

        return DecodedFunction(func, instructions, warnings)

    def _unknown(self, code: bytes, start: int, end: int) -> Instruction:
        return Instruction(
            offset      = start,
            opcode      = code[start],
            descriptor  = UNKNOWN_DESCRIPTOR,
            operands    = [],
            size        = end - start,
            raw         = code[start:end],
        )

    def validate(self, decoded: DecodedFunction):
        '''Bounds-check constant, atom, slot and jump operands

        Raises InvalidReferenceError for the first operand out of range.
        '''
        func = decoded.function
        code_len = len(func.bytecode)
        atoms = self.module.atoms if self.module is not None else None

        limits = {
            OperandKind.CONST   : ('constant', len(func.cpool)),
            OperandKind.LOC     : ('local', func.var_count),
            OperandKind.ARG     : ('argument', max(func.arg_count, func.defined_arg_count)),
            OperandKind.VAR_REF : ('closure variable', len(func.closure_vars)),
        }

        for inst in decoded.instructions:
            for op in inst.operands:
                self._check_operand(inst, op, limits, atoms)

                if op.kind == OperandKind.LABEL:
                    if not 0 <= op.value <= code_len or (op.value < code_len and decoded.at(op.value) is None):
                        raise InvalidReferenceError('jump target', op.value, code_len, inst.offset)

    def _check_operand(self, inst: Instruction, op: Operand, limits: dict, atoms):
        if op.kind in limits:
            what, limit = limits[op.kind]
            if op.value >= limit:
                raise InvalidReferenceError(what, op.value, limit, inst.offset)

        elif op.kind == OperandKind.ATOM and atoms is not None:
            try:
                atoms.resolve(op.value)
            except InvalidReferenceError as e:
                raise InvalidReferenceError('atom', op.value, e.limit, inst.offset) from None


def decode_function(func: FunctionInfo, module: Module, validate: bool = True) -> DecodedFunction:
    decoder = Decoder(instruction_table_for(module.version), module)
    decoded = decoder.decode(func)
    if validate:
        decoder.validate(decoded)
    return decoded
