'''Text listing of decoded instructions'''

from ..common import *
from .atoms import AtomTable
from .instruction import Instruction, OperandKind
from .optable import IMPLICIT_FORMATS

OPERAND_COLUMN = ' ' * 7


def format_operands(inst: Instruction, atoms: AtomTable | None = None) -> str:
    '''Explicit operands in encoding order; labels show the raw displacement'''
    values = []
    atom_id = None
    target = None
    for op in inst.operands:
        if op.implicit:
            continue

        if op.kind == OperandKind.LABEL:
            values.append(str(op.raw if op.raw is not None else op.value))
            target = op.value
            continue

        if op.kind == OperandKind.ATOM:
            atom_id = op.value

        values.append(str(op.value))

    if not values:
        return ''

    text = OPERAND_COLUMN + ', '.join(values)

    notes = []
    if atom_id is not None:
        notes.append(str(atoms.resolve_or_raw(atom_id)) if atoms is not None else f'<atom:{atom_id}>')
    if target is not None:
        notes.append(f'-> {target:05}')

    if notes:
        text += ' ; ' + ' '.join(notes)

    return text


def format_instruction(inst: Instruction, atoms: AtomTable | None = None) -> str:
    '''`{pc:05} {name:<18}` followed by operands and, for short forms, `<fmt:...>`'''
    if inst.is_unknown:
        return f'{inst.offset:05} {"unknown":<18}{OPERAND_COLUMN}0x{inst.opcode:02x}'

    line = f'{inst.offset:05} {inst.mnemonic:<18}' + format_operands(inst, atoms)
    if inst.info.fmt in IMPLICIT_FORMATS:
        line += f'{OPERAND_COLUMN}<fmt:{inst.info.fmt}>'
    return line


def raw_listing(instructions: list[Instruction], atoms: AtomTable | None = None) -> list[str]:
    return [format_instruction(inst, atoms) for inst in instructions]
