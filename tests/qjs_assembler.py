'''
In-memory .jsc builder for the tests

    jsc = JscBuilder()
    add = jsc.function('add', args = ['a', 'b'], code = [
        ('get_arg0',), ('get_arg1',), ('add',), ('return',),
    ])
    data = jsc.build(jsc.function('<eval>', cpool = [add], code = [...]))

Instructions are tuples of a mnemonic and its explicit operands. Atom
operands are names, label operands are label names; a bare string in the
code list defines a label at that position.
'''

import struct
from dataclasses import dataclass, field
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from deqjs.quickjs import CURRENT_OPCODES, LEGACY_OPCODES, OpFormat, builtin_atoms, legacy_builtin_atoms
from deqjs.quickjs.container import BC_VERSION, BC_VERSION_LEGACY, VarDefFlags
from deqjs.quickjs.values import BCTag, LegacyBCTag

CONST       = VarDefFlags.CONST
LEXICAL     = VarDefFlags.LEXICAL
CAPTURED    = VarDefFlags.CAPTURED

KIND_GENERATOR  = 1
KIND_ASYNC      = 2

LABEL_BASE = {
    OpFormat.LABEL          : 1,
    OpFormat.LABEL8         : 1,
    OpFormat.LABEL16        : 1,
    OpFormat.LABEL_U16      : 1,
    OpFormat.ATOM_LABEL_U8  : 5,
    OpFormat.ATOM_LABEL_U16 : 5,
}


def leb128(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def sleb128(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        done = (value == 0 and not byte & 0x40) or (value == -1 and byte & 0x40)
        out.append(byte if done else byte | 0x80)
        if done:
            return bytes(out)


def qjs_string(text: str) -> bytes:
    if all(ord(ch) < 256 for ch in text):
        return leb128(len(text) << 1) + text.encode('latin-1')

    data = text.encode('utf-16-le')
    return leb128(((len(data) // 2) << 1) | 1) + data


class Undefined:
    '''cpool entry serialized as `undefined`'''


@dataclass
class Var:
    name    : str
    flags   : int = 0


@dataclass(eq = False)
class FunctionSpec:
    name            : str
    args            : list[Var]
    locals          : list[Var]
    code            : list
    cpool           : list                  = field(default_factory = list)
    closure_vars    : list[tuple]           = field(default_factory = list)
    strict          : bool                  = False
    kind            : int                   = 0
    has_prototype   : bool                  = True
    raw_code        : bytes | None          = None


class JscBuilder:
    '''Serializes a function tree in the current or the legacy v1 layout'''

    def __init__(self, legacy: bool = False):
        self.legacy = legacy
        self.opcodes = LEGACY_OPCODES if legacy else CURRENT_OPCODES
        self.tags = LegacyBCTag if legacy else BCTag
        self.builtins = legacy_builtin_atoms() if legacy else builtin_atoms()
        self.atoms: list[str] = []

    # ------------------------------------------------------------------ atoms --
    def atom(self, name: str) -> int:
        '''Atom id used by instruction operands'''
        if name == '':
            return 0

        if name in self.builtins:
            return self.builtins.index(name) + 1

        if name not in self.atoms:
            self.atoms.append(name)
        return len(self.builtins) + 1 + self.atoms.index(name)

    def atom_ref(self, name: str) -> bytes:
        '''Atom inside serialized metadata'''
        if self.legacy:
            return leb128(self.atom(name))
        return leb128(self.atom(name) << 1)

    def atom_table(self) -> bytes:
        out = bytearray(leb128(len(self.atoms)))
        for name in self.atoms:
            if not self.legacy:
                out.append(1)
            out += qjs_string(name)
        return bytes(out)

    # -------------------------------------------------------------- functions --
    def function(self, name: str = '', args = (), locals = (), code = (), **kwargs) -> FunctionSpec:
        def var(v):
            return v if isinstance(v, Var) else Var(v)

        return FunctionSpec(name, [var(a) for a in args], [var(l) for l in locals], list(code), **kwargs)

    def assemble(self, code: list) -> bytes:
        '''Two passes: label positions first (sizes are fixed), then bytes'''
        labels = {}
        pc = 0
        for item in code:
            if isinstance(item, str):
                labels[item] = pc
            else:
                pc += self.opcodes.infos[self.opcodes.opcode(item[0])].size

        out = bytearray()
        for item in code:
            if isinstance(item, str):
                continue
            out += self.encode(item[0], list(item[1:]), len(out), labels)
        return bytes(out)

    def encode(self, mnemonic: str, operands: list, pc: int, labels: dict[str, int]) -> bytes:
        info = self.opcodes.infos[self.opcodes.opcode(mnemonic)]
        fmt = info.fmt

        def rel(target) -> int:
            return labels[target] - (pc + LABEL_BASE[fmt])

        def atom(value) -> int:
            return self.atom(value) if isinstance(value, str) else value

        out = bytearray([info.opcode])
        match fmt:
            case OpFormat.NONE | OpFormat.NONE_INT | OpFormat.NONE_LOC | OpFormat.NONE_ARG \
                    | OpFormat.NONE_VAR_REF | OpFormat.NPOPX:
                pass

            case OpFormat.U8 | OpFormat.LOC8 | OpFormat.CONST8:
                out += struct.pack('<B', operands[0])

            case OpFormat.I8:
                out += struct.pack('<b', operands[0])

            case OpFormat.LABEL8:
                out += struct.pack('<b', rel(operands[0]))

            case OpFormat.U16 | OpFormat.NPOP | OpFormat.LOC | OpFormat.ARG | OpFormat.VAR_REF:
                out += struct.pack('<H', operands[0])

            case OpFormat.I16:
                out += struct.pack('<h', operands[0])

            case OpFormat.LABEL16:
                out += struct.pack('<h', rel(operands[0]))

            case OpFormat.NPOP_U16:
                out += struct.pack('<HH', operands[0], operands[1])

            case OpFormat.U32 | OpFormat.CONST:
                out += struct.pack('<I', operands[0])

            case OpFormat.U32X2:
                out += struct.pack('<II', operands[0], operands[1])

            case OpFormat.I32:
                out += struct.pack('<i', operands[0])

            case OpFormat.LABEL:
                out += struct.pack('<i', rel(operands[0]))

            case OpFormat.ATOM:
                out += struct.pack('<I', atom(operands[0]))

            case OpFormat.ATOM_U8:
                out += struct.pack('<IB', atom(operands[0]), operands[1])

            case OpFormat.ATOM_U16:
                out += struct.pack('<IH', atom(operands[0]), operands[1])

            case OpFormat.ATOM_LABEL_U8:
                out += struct.pack('<IiB', atom(operands[0]), rel(operands[1]), operands[2])

            case OpFormat.ATOM_LABEL_U16:
                out += struct.pack('<IiH', atom(operands[0]), rel(operands[1]), operands[2])

            case OpFormat.LABEL_U16:
                out += struct.pack('<iH', rel(operands[0]), operands[1])

        assert len(out) == info.size, f'{mnemonic}: encoded {len(out)} bytes, expected {info.size}'
        return bytes(out)

    # ----------------------------------------------------------------- values --
    def value(self, v) -> bytes:
        tags = self.tags
        match v:
            case None:
                return bytes([tags.NULL])

            case Undefined():
                return bytes([tags.UNDEFINED])

            case bool():
                return bytes([tags.BOOL_TRUE if v else tags.BOOL_FALSE])

            case int():
                return bytes([tags.INT32]) + sleb128(v)

            case float():
                return bytes([tags.FLOAT64]) + struct.pack('<d', v)

            case str():
                return bytes([tags.STRING]) + qjs_string(v)

            case list():
                return bytes([tags.ARRAY]) + leb128(len(v)) + b''.join(self.value(x) for x in v)

            case dict():
                out = bytearray([tags.OBJECT]) + leb128(len(v))
                for key, x in v.items():
                    out += self.atom_ref(key) + self.value(x)
                return bytes(out)

            case FunctionSpec():
                return bytes([tags.FUNCTION_BYTECODE]) + self.function_body(v)

            case _:
                raise TypeError(f'cannot serialize {v!r}')

    def function_body(self, fn: FunctionSpec) -> bytes:
        code = fn.raw_code if fn.raw_code is not None else self.assemble(fn.code)
        var_defs = fn.args + fn.locals
        flags = (1 if fn.has_prototype else 0) | (fn.kind << 4)

        out = bytearray(struct.pack('<HB', flags, 1 if fn.strict else 0))
        out += self.atom_ref(fn.name)

        counts = [len(fn.args), len(fn.locals), len(fn.args), 16]
        if not self.legacy:
            counts.append(len(fn.closure_vars))         # var_ref_count
        counts += [len(fn.closure_vars), len(fn.cpool), len(code), len(var_defs)]
        for n in counts:
            out += leb128(n)

        for v in var_defs:
            out += self.atom_ref(v.name) + leb128(0)
            out += leb128(0)                # scope_next
            out.append(v.flags)

        for name, var_idx, is_local in fn.closure_vars:
            out += self.atom_ref(name) + leb128(var_idx)
            out += bytes([1 if is_local else 0]) if self.legacy else leb128(1 if is_local else 0)

        cpool = b''.join(self.value(c) for c in fn.cpool)
        if self.legacy:
            out += code + cpool
        else:
            out += cpool + code
        return bytes(out)

    # ------------------------------------------------------------------ files --
    def version_byte(self) -> int:
        return BC_VERSION_LEGACY if self.legacy else BC_VERSION

    def build(self, root: FunctionSpec) -> bytes:
        # values first: serializing them registers the atoms
        body = self.value(root)
        return bytes([self.version_byte()]) + self.atom_table() + body

    def build_module(self, root: FunctionSpec, name: str = 'main.js', requests = (), imports = (),
                     exports = ()) -> bytes:
        '''Module record + module function

        imports: (var_index, import_name, request_index)
        exports: (local_index, export_name)
        '''
        record = bytearray(self.atom_ref(name))
        record += leb128(len(requests))
        for r in requests:
            record += self.atom_ref(r)

        record += leb128(len(exports))
        for local_index, export_name in exports:
            record += bytes([0]) + leb128(local_index) + self.atom_ref(export_name)

        record += leb128(0)         # star exports

        record += leb128(len(imports))
        for var_index, import_name, request_index in imports:
            record += leb128(var_index) + self.atom_ref(import_name) + leb128(request_index)

        if not self.legacy:
            record.append(0)        # has_tla

        body = bytes([self.tags.MODULE]) + bytes(record) + self.value(root)
        return bytes([self.version_byte()]) + self.atom_table() + body


def script(builder: JscBuilder, code: list, cpool = (), locals = (), name: str = '<eval>') -> bytes:
    '''Single entry function'''
    return builder.build(builder.function(name, locals = locals, code = code, cpool = list(cpool)))
