'''Atoms: interned strings referenced by index from bytecode and metadata'''

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

import yaml

from ..common import *
from .reader import BinaryReader

ATOMS_DATA_PATH = Path(__file__).parent / 'data' / 'atoms.yaml'


@lru_cache(maxsize = None)
def _load_builtin_atoms() -> dict[str, tuple[str, ...]]:
    with open(ATOMS_DATA_PATH, 'r', encoding = 'utf-8') as f:
        data = yaml.safe_load(f)

    return {key: tuple('' if s is None else str(s) for s in values) for key, values in data.items()}


def builtin_atoms() -> tuple[str, ...]:
    '''Builtin atom names of the current format (atom id = index + 1)'''
    return _load_builtin_atoms()['current']


def legacy_builtin_atoms() -> tuple[str, ...]:
    '''Fixed atom prefix of the legacy v1 format'''
    return _load_builtin_atoms()['legacy_v1']


class AtomKind(IntEnum2):
    NULL        = 0
    BUILTIN     = 1
    STRING      = 2
    SYMBOL      = 3
    TAGGED_INT  = 4
    RAW         = 5


@dataclass(frozen = True)
class Atom:
    '''Resolved atom'''
    kind    : AtomKind
    text    : str = ''
    value   : int = 0       # builtin/raw id, tagged integer, or symbol type

    @property
    def is_null(self) -> bool:
        return self.kind == AtomKind.NULL

    @property
    def name(self) -> str | None:
        '''Plain string value, or None when the atom is not a string'''
        if self.kind in (AtomKind.BUILTIN, AtomKind.STRING):
            return self.text

        if self.kind == AtomKind.TAGGED_INT:
            return str(self.value)

        return None

    def __str__(self) -> str:
        match self.kind:
            case AtomKind.NULL:
                return '<null>'

            case AtomKind.BUILTIN | AtomKind.STRING:
                return self.text

            case AtomKind.SYMBOL:
                return f'<sym:{self.value}:{self.text}>'

            case AtomKind.TAGGED_INT:
                return f'<int:{self.value}>'

            case _:
                return f'<atom:{self.value}>'


NULL_ATOM = Atom(AtomKind.NULL)

# Instruction operands tag integer property names with the top bit
ATOM_TAG_INT = 1 << 31


@dataclass
class AtomTable:
    '''Builtin atoms followed by the atoms serialized in the file

    `first_atom` is the first id that indexes `entries` instead of builtins.
    '''
    builtins    : tuple[str, ...]
    entries     : list[Atom] = field(default_factory = list)
    first_atom  : int = 1

    def __len__(self) -> int:
        return self.first_atom + len(self.entries)

    def resolve(self, atom_id: int) -> Atom:
        '''Resolve an atom id used by instruction operands'''
        if atom_id == 0:
            return NULL_ATOM

        if atom_id & ATOM_TAG_INT:
            return Atom(AtomKind.TAGGED_INT, value = atom_id & ~ATOM_TAG_INT)

        if atom_id < self.first_atom:
            if atom_id - 1 < len(self.builtins):
                return Atom(AtomKind.BUILTIN, self.builtins[atom_id - 1], atom_id)
            return Atom(AtomKind.RAW, value = atom_id)

        idx = atom_id - self.first_atom
        if idx >= len(self.entries):
            raise InvalidReferenceError('atom', atom_id, len(self))

        return self.entries[idx]

    def resolve_or_raw(self, atom_id: int) -> Atom:
        try:
            return self.resolve(atom_id)
        except InvalidReferenceError:
            return Atom(AtomKind.RAW, value = atom_id)

    def read_atom(self, reader: BinaryReader) -> Atom:
        '''Atom reference inside a serialized value (bit 0 tags an integer atom)'''
        offset = reader.position
        v = reader.read_leb128()
        if v & 1:
            return Atom(AtomKind.TAGGED_INT, value = v >> 1)

        try:
            return self.resolve(v >> 1)
        except InvalidReferenceError as e:
            raise FormatError(f'invalid atom reference {v >> 1} at offset {offset}') from e


class LegacyAtomTable(AtomTable):
    '''Version 1 table: ids index the combined builtin + file list directly'''

    def __len__(self) -> int:
        return 1 + len(self.builtins) + len(self.entries)

    def resolve(self, atom_id: int) -> Atom:
        if atom_id == 0:
            return NULL_ATOM

        if atom_id & ATOM_TAG_INT:
            return Atom(AtomKind.TAGGED_INT, value = atom_id & ~ATOM_TAG_INT)

        idx = atom_id - 1
        if idx < len(self.builtins):
            return Atom(AtomKind.BUILTIN, self.builtins[idx], atom_id)

        idx -= len(self.builtins)
        if idx < len(self.entries):
            return self.entries[idx]

        raise InvalidReferenceError('atom', atom_id, len(self))

    def read_atom(self, reader: BinaryReader) -> Atom:
        atom_id = reader.read_leb128()
        return self.resolve_or_raw(atom_id)


def read_atom_table(reader: BinaryReader) -> AtomTable:
    '''Current format atom table (the version byte has been consumed)'''
    count = reader.read_leb128()
    if count > reader.remaining:
        raise TruncatedInputError(reader.position, count, reader.remaining, 'atom table')
    builtins = builtin_atoms()
    table = AtomTable(builtins, first_atom = len(builtins) + 1)
    for _ in range(count):
        typ = reader.read_u8()
        if typ == 0:
            table.entries.append(Atom(AtomKind.RAW, value = reader.read_u32()))
            continue

        text = reader.read_string()
        if typ == 1:
            table.entries.append(Atom(AtomKind.STRING, text))
        else:
            table.entries.append(Atom(AtomKind.SYMBOL, text, typ))

    return table


def read_legacy_atom_table(reader: BinaryReader) -> LegacyAtomTable:
    '''Version 1 atom table: count strings appended to the builtin prefix'''
    count = reader.read_leb128()
    if count > reader.remaining:
        raise TruncatedInputError(reader.position, count, reader.remaining, 'atom table')
    table = LegacyAtomTable(legacy_builtin_atoms(), first_atom = 1)
    for _ in range(count):
        table.entries.append(Atom(AtomKind.STRING, reader.read_string()))

    return table
