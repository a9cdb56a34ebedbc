'''
Container parser: version header, atom table and the serialized function tree
'''

from dataclasses import dataclass, field

from ..common import *
from .reader import BinaryReader
from .atoms import *
from .values import *

BC_VERSION = 23
BC_VERSION_LEGACY = 1


class FormatVersion(IntEnum2):
    AUTO    = 0
    CURRENT = 1
    LEGACY  = 2


class FunctionKind(IntEnum2):
    NORMAL          = 0
    GENERATOR       = 1
    ASYNC           = 2
    ASYNC_GENERATOR = 3


class VarDefFlags(IntFlag2):
    NONE        = 0
    CONST       = 1 << 0
    LEXICAL     = 1 << 1
    CAPTURED    = 1 << 2
    VAR_REF     = 1 << 6        # current format: a var_ref index follows


@dataclass
class VarDef:
    '''Variable definition (arguments first, then locals)'''
    name        : Atom
    scope_level : int = 0
    scope_next  : int = -1
    flags       : int = 0
    var_ref_idx : int | None = None

    @property
    def is_const(self) -> bool:
        return bool(self.flags & VarDefFlags.CONST)

    @property
    def is_lexical(self) -> bool:
        return bool(self.flags & VarDefFlags.LEXICAL)


@dataclass
class ClosureVar:
    '''Captured variable: a slot of the parent's locals or of the parent's closure vars'''
    name        : Atom
    var_idx     : int = 0
    flags       : int = 0

    @property
    def is_local(self) -> bool:
        '''True when the source is a parent local/argument, False for a parent closure var'''
        return bool(self.flags & 1)


@dataclass
class FunctionInfo:
    '''One compiled function'''
    index               : int
    parent              : int | None            = None
    name                : Atom                  = NULL_ATOM
    flags               : int                   = 0
    is_strict           : bool                  = False
    kind                : FunctionKind          = FunctionKind.NORMAL
    has_prototype       : bool                  = False
    arg_count           : int                   = 0
    var_count           : int                   = 0
    defined_arg_count   : int                   = 0
    stack_size          : int                   = 0
    var_ref_count       : int                   = 0
    var_defs            : list[VarDef]          = field(default_factory = list)
    closure_vars        : list[ClosureVar]      = field(default_factory = list)
    cpool               : list[Value]           = field(default_factory = list)
    bytecode            : bytes                 = b''
    complete            : bool                  = False

    @property
    def is_anonymous(self) -> bool:
        return self.name.is_null

    @property
    def is_arrow(self) -> bool:
        # arrow functions are the only normal functions without a prototype
        return self.kind == FunctionKind.NORMAL and not self.has_prototype

    def arg_def(self, idx: int) -> VarDef | None:
        return self.var_defs[idx] if idx < min(self.arg_count, len(self.var_defs)) else None

    def local_def(self, idx: int) -> VarDef | None:
        pos = self.arg_count + idx
        return self.var_defs[pos] if idx < self.var_count and pos < len(self.var_defs) else None

    def display_name(self) -> str:
        if self.name.is_null:
            return ''

        text = str(self.name)
        if text.startswith('<atom:') and text.endswith('>'):
            return f'atom_{text[6:-1]}'
        return text


@dataclass
class Module:
    '''Decoded container: atom table, root value and the flat function table'''
    version     : FormatVersion
    atoms       : AtomTable
    root        : Value | None              = None
    functions   : list[FunctionInfo]        = field(default_factory = list)
    record      : ModuleRecord | None       = None

    @property
    def entry(self) -> FunctionInfo | None:
        return self.functions[0] if self.functions else None

    def function(self, index: int) -> FunctionInfo:
        if not 0 <= index < len(self.functions):
            raise InvalidReferenceError('function', index, len(self.functions))
        return self.functions[index]


# ============================================================================
# Parsers
# ============================================================================

class ContainerParser:
    '''Current format (BC_VERSION 23) reader'''

    version = FormatVersion.CURRENT
    version_byte = BC_VERSION
    tags = BCTag
    strict_tags = False

    def __init__(self, data: bytes):
        self.reader = BinaryReader(data)
        self.atoms: AtomTable | None = None
        self.functions: list[FunctionInfo] = []
        self.record: ModuleRecord | None = None
        self._parents: list[int] = []

    def parse(self) -> Module:
        r = self.reader
        if r.at_end():
            raise FormatError('empty input')

        version = r.read_u8()
        if version != self.version_byte:
            raise FormatError(f'invalid QuickJS bytecode version: {version} (expected {self.version_byte})')

        try:
            self.atoms = self.read_atom_table()
            root = self.read_value()

        except TruncatedInputError as e:
            e.partial = self._module(None)
            raise

        return self._module(root)

    def _module(self, root: Value | None) -> Module:
        return Module(
            version     = self.version,
            atoms       = self.atoms if self.atoms is not None else AtomTable(()),
            root        = root,
            functions   = self.functions,
            record      = self.record,
        )

    def read_atom_table(self) -> AtomTable:
        return read_atom_table(self.reader)

    def read_atom(self) -> Atom:
        return self.atoms.read_atom(self.reader)

    def read_count(self, what: str) -> int:
        '''Element count that must be backed by at least one byte per element'''
        r = self.reader
        count = r.read_leb128()
        if count > r.remaining:
            raise TruncatedInputError(r.position, count, r.remaining, what)
        return count

    # ------------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------------

    def read_value(self) -> Value:
        r = self.reader
        offset = r.position
        raw_tag = r.read_u8()
        try:
            tag = self.tags(raw_tag)
        except ValueError:
            if self.strict_tags:
                raise UnsupportedTagError(raw_tag, offset) from None
            return Value(ValueKind.UNSUPPORTED, tag = raw_tag)

        return self.read_tagged_value(tag, offset)

    def read_tagged_value(self, tag, offset: int) -> Value:
        r = self.reader
        tags = self.tags

        match tag:
            case tags.NULL:
                return Value(ValueKind.NULL)

            case tags.UNDEFINED:
                return Value(ValueKind.UNDEFINED)

            case tags.BOOL_FALSE | tags.BOOL_TRUE:
                return Value(ValueKind.BOOL, tag == tags.BOOL_TRUE)

            case tags.INT32:
                return Value(ValueKind.INT32, r.read_sleb128())

            case tags.FLOAT64:
                return Value(ValueKind.FLOAT64, r.read_f64())

            case tags.STRING:
                return Value(ValueKind.STRING, r.read_string())

            case tags.OBJECT:
                props = []
                for _ in range(self.read_count('object properties')):
                    name = self.read_atom()
                    props.append((name, self.read_value()))
                return Value(ValueKind.OBJECT, props = props)

            case tags.ARRAY | tags.TEMPLATE_OBJECT:
                items = [self.read_value() for _ in range(self.read_count('array elements'))]
                value = Value(ValueKind.ARRAY, items = items)
                if tag == tags.TEMPLATE_OBJECT:
                    value.inner = self.read_value()
                return value

            case tags.BIG_INT:
                size = r.read_leb128()
                return Value(ValueKind.BIG_INT, r.read_bytes(size, 'bigint'))

            case tags.FUNCTION_BYTECODE:
                func = self.read_function()
                return Value(ValueKind.FUNCTION, function = func.index)

            case tags.MODULE:
                record = self.read_module_record()
                if self.record is None:
                    self.record = record
                func_obj = self.read_value()
                return Value(ValueKind.MODULE, module = record, inner = func_obj,
                             function = func_obj.function)

            case tags.TYPED_ARRAY:
                kind = r.read_u8()
                length = r.read_leb128()
                array_offset = r.read_leb128()
                buffer = self.read_value()
                return Value(ValueKind.TYPED_ARRAY, tag = kind, length = length,
                             offset = array_offset, inner = buffer)

            case tags.ARRAY_BUFFER:
                return self.read_array_buffer()

            case tags.DATE:
                return Value(ValueKind.DATE, inner = self.read_value())

            case _:
                return self.read_extended_value(tag, offset)

    def read_array_buffer(self) -> Value:
        r = self.reader
        byte_length = r.read_leb128()
        r.read_leb128()     # max_byte_length
        return Value(ValueKind.ARRAY_BUFFER, r.read_bytes(byte_length, 'array buffer'))

    def read_extended_value(self, tag, offset: int) -> Value:
        '''Tags only the current format knows'''
        r = self.reader
        match tag:
            case BCTag.REGEXP:
                pattern = r.read_string()
                bytecode = r.read_string()
                return Value(ValueKind.REGEXP, pattern, inner = Value(ValueKind.STRING, bytecode))

            case BCTag.SYMBOL:
                return Value(ValueKind.SYMBOL, atom = self.read_atom())

            case _:
                raise UnsupportedTagError(int(tag), offset)

    def read_module_record(self) -> ModuleRecord:
        r = self.reader
        record = ModuleRecord(self.read_atom())

        for _ in range(self.read_count('module requests')):
            record.requests.append(self.read_atom())

        for _ in range(self.read_count('module exports')):
            export_type = r.read_u8()
            if export_type == 0:
                local_index = r.read_leb128()
                record.exports.append(ModuleExport(NULL_ATOM, local_index = local_index))
            else:
                request_index = r.read_leb128()
                local_name = self.read_atom()
                record.exports.append(ModuleExport(NULL_ATOM, request_index = request_index, local_name = local_name))
            record.exports[-1].export_name = self.read_atom()

        for _ in range(self.read_count('star exports')):
            record.star_exports.append(r.read_leb128())

        for _ in range(self.read_count('module imports')):
            var_index = r.read_leb128()
            import_name = self.read_atom()
            request_index = r.read_leb128()
            record.imports.append(ModuleImport(var_index, import_name, request_index))

        self.read_module_trailer(record)
        return record

    def read_module_trailer(self, record: ModuleRecord):
        record.has_tla = self.reader.read_u8() != 0

    # ------------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------------

    def new_function(self) -> FunctionInfo:
        '''Register a function in the flat table before its children (pre-order)'''
        func = FunctionInfo(
            index   = len(self.functions),
            parent  = self._parents[-1] if self._parents else None,
        )
        self.functions.append(func)
        return func

    def read_function(self) -> FunctionInfo:
        func = self.new_function()
        self._parents.append(func.index)
        try:
            self.read_function_body(func)
        finally:
            self._parents.pop()

        func.complete = True
        return func

    def read_function_body(self, func: FunctionInfo):
        r = self.reader
        func.flags = r.read_u16()
        func.is_strict = r.read_u8() != 0
        func.name = self.read_atom()
        func.has_prototype = bool(func.flags & 1)
        func.kind = FunctionKind((func.flags >> 4) & 3)

        func.arg_count = r.read_leb128()
        func.var_count = r.read_leb128()
        func.defined_arg_count = r.read_leb128()
        func.stack_size = r.read_leb128()
        func.var_ref_count = r.read_leb128()
        closure_var_count = r.read_leb128()
        cpool_count = r.read_leb128()
        byte_code_len = r.read_leb128()
        local_count = r.read_leb128()

        for what, count in (('closure vars', closure_var_count), ('constant pool', cpool_count),
                            ('var defs', local_count)):
            if count > r.remaining:
                raise TruncatedInputError(r.position, count, r.remaining, what)

        for _ in range(local_count):
            name = self.read_atom()
            scope_level = r.read_leb128()
            scope_next = r.read_leb128() - 1
            flags = r.read_u8()
            var_ref_idx = r.read_leb128() if flags & VarDefFlags.VAR_REF else None
            func.var_defs.append(VarDef(name, scope_level, scope_next, flags, var_ref_idx))

        for _ in range(closure_var_count):
            name = self.read_atom()
            var_idx = r.read_leb128()
            flags = r.read_leb128()
            func.closure_vars.append(ClosureVar(name, var_idx, flags))

        for _ in range(cpool_count):
            func.cpool.append(self.read_value())

        func.bytecode = r.read_bytes(byte_code_len, 'bytecode')


class LegacyContainerParser(ContainerParser):
    '''Version 1 format reader'''

    version = FormatVersion.LEGACY
    version_byte = BC_VERSION_LEGACY
    tags = LegacyBCTag
    strict_tags = True

    def read_atom_table(self) -> AtomTable:
        return read_legacy_atom_table(self.reader)

    def read_array_buffer(self) -> Value:
        r = self.reader
        byte_length = r.read_leb128()
        return Value(ValueKind.ARRAY_BUFFER, r.read_bytes(byte_length, 'array buffer'))

    def read_extended_value(self, tag, offset: int) -> Value:
        r = self.reader
        match tag:
            case LegacyBCTag.SHARED_ARRAY_BUFFER:
                r.read_leb128()
                r.read_u64()
                return Value(ValueKind.UNSUPPORTED, tag = int(tag))

            case LegacyBCTag.OBJECT_VALUE:
                return self.read_value()

            case LegacyBCTag.OBJECT_REFERENCE:
                r.read_leb128()
                return Value(ValueKind.UNSUPPORTED, tag = int(tag))

            case _:
                raise UnsupportedTagError(int(tag), offset)

    def read_module_trailer(self, record: ModuleRecord):
        pass

    def read_function_body(self, func: FunctionInfo):
        r = self.reader
        func.flags = r.read_u16()
        r.read_u8()     # js_mode
        func.name = self.read_atom()
        func.has_prototype = bool(func.flags & 1)
        func.kind = FunctionKind((func.flags >> 4) & 3)

        func.arg_count = r.read_leb128()
        func.var_count = r.read_leb128()
        func.defined_arg_count = r.read_leb128()
        func.stack_size = r.read_leb128()
        closure_var_count = r.read_leb128()
        cpool_count = r.read_leb128()
        byte_code_len = r.read_leb128()
        local_count = r.read_leb128()

        for what, count in (('closure vars', closure_var_count), ('constant pool', cpool_count),
                            ('var defs', local_count)):
            if count > r.remaining:
                raise TruncatedInputError(r.position, count, r.remaining, what)

        for _ in range(local_count):
            name = self.read_atom()
            scope_level = r.read_leb128()
            scope_next = r.read_leb128()
            flags = r.read_u8()
            func.var_defs.append(VarDef(name, scope_level, scope_next, flags))

        for _ in range(closure_var_count):
            name = self.read_atom()
            var_idx = r.read_leb128()
            flags = r.read_u8()
            func.closure_vars.append(ClosureVar(name, var_idx, flags))

        func.bytecode = r.read_bytes(byte_code_len, 'bytecode')

        if func.flags & 0x8000:
            self.read_atom()            # filename
            r.read_leb128()             # line number
            pc2line_len = r.read_leb128()
            r.read_bytes(pc2line_len, 'pc2line')

        for _ in range(cpool_count):
            func.cpool.append(self.read_value())


def detect_version(data: bytes) -> FormatVersion:
    '''Auto-detection: a leading version byte of 1 selects the legacy format'''
    if data and data[0] == BC_VERSION_LEGACY:
        return FormatVersion.LEGACY
    return FormatVersion.CURRENT


def parse_module(data: bytes, version: FormatVersion | str = FormatVersion.AUTO) -> Module:
    '''Decode a .jsc buffer into a Module

    Raises FormatError for an unsupported version or undecodable structure and
    TruncatedInputError when a declared length runs past the buffer.
    '''
    if isinstance(version, str):
        version = FormatVersion.from_name(version)

    if version == FormatVersion.AUTO:
        version = detect_version(data)

    parser_cls = LegacyContainerParser if version == FormatVersion.LEGACY else ContainerParser
    return parser_cls(data).parse()
