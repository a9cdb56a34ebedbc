'''Serialized QuickJS values (constant pool entries and the module root)'''

from dataclasses import dataclass, field

from ..common import *
from .atoms import Atom


class BCTag(IntEnum2):
    '''Value tags of the current format'''
    NULL                = 1
    UNDEFINED           = 2
    BOOL_FALSE          = 3
    BOOL_TRUE           = 4
    INT32               = 5
    FLOAT64             = 6
    STRING              = 7
    OBJECT              = 8
    ARRAY               = 9
    BIG_INT             = 10
    TEMPLATE_OBJECT     = 11
    FUNCTION_BYTECODE   = 12
    MODULE              = 13
    TYPED_ARRAY         = 14
    ARRAY_BUFFER        = 15
    SHARED_ARRAY_BUFFER = 16
    REGEXP              = 17
    DATE                = 18
    OBJECT_VALUE        = 19
    OBJECT_REFERENCE    = 20
    MAP                 = 21
    SET                 = 22
    SYMBOL              = 23


class LegacyBCTag(IntEnum2):
    '''Value tags of the version 1 format'''
    NULL                = 1
    UNDEFINED           = 2
    BOOL_FALSE          = 3
    BOOL_TRUE           = 4
    INT32               = 5
    FLOAT64             = 6
    STRING              = 7
    OBJECT              = 8
    ARRAY               = 9
    BIG_INT             = 10
    TEMPLATE_OBJECT     = 13
    FUNCTION_BYTECODE   = 14
    MODULE              = 15
    TYPED_ARRAY         = 16
    ARRAY_BUFFER        = 17
    SHARED_ARRAY_BUFFER = 18
    DATE                = 19
    OBJECT_VALUE        = 20
    OBJECT_REFERENCE    = 21


class ValueKind(IntEnum2):
    NULL                = 0
    UNDEFINED           = 1
    BOOL                = 2
    INT32               = 3
    FLOAT64             = 4
    STRING              = 5
    OBJECT              = 6
    ARRAY               = 7
    BIG_INT             = 8
    FUNCTION            = 9
    MODULE              = 10
    TYPED_ARRAY         = 11
    ARRAY_BUFFER        = 12
    REGEXP              = 13
    DATE                = 14
    SYMBOL              = 15
    UNSUPPORTED         = 16


TYPED_ARRAY_NAMES = (
    'Uint8ClampedArray', 'Int8Array', 'Uint8Array', 'Int16Array', 'Uint16Array',
    'Int32Array', 'Uint32Array', 'BigInt64Array', 'BigUint64Array', 'Float16Array',
    'Float32Array', 'Float64Array',
)


@dataclass
class ModuleExport:
    '''Export entry: a local variable or a re-export from a requested module'''
    export_name     : Atom
    local_index     : int | None = None
    request_index   : int | None = None
    local_name      : Atom | None = None


@dataclass
class ModuleImport:
    var_index       : int
    import_name     : Atom
    request_index   : int


@dataclass
class ModuleRecord:
    name            : Atom
    requests        : list[Atom]            = field(default_factory = list)
    exports         : list[ModuleExport]    = field(default_factory = list)
    star_exports    : list[int]             = field(default_factory = list)
    imports         : list[ModuleImport]    = field(default_factory = list)
    has_tla         : bool                  = False


@dataclass
class Value:
    '''Decoded serialized value

    `value` holds the scalar payload (bool/int/float/str/bytes), `items` the
    elements of arrays, `props` the properties of objects. Functions are
    referenced by their index in the module's function table.
    '''
    kind        : ValueKind
    value       : Any                       = None
    items       : list['Value']             = field(default_factory = list)
    props       : list[tuple[Atom, 'Value']] = field(default_factory = list)
    function    : int | None                = None
    atom        : Atom | None               = None
    module      : ModuleRecord | None       = None
    inner       : 'Value | None'            = None      # typed array buffer, date time value
    tag         : int | None                = None      # unsupported tag, typed array kind
    length      : int                       = 0
    offset      : int                       = 0

    @property
    def is_function(self) -> bool:
        return self.kind == ValueKind.FUNCTION

    def children(self) -> list['Value']:
        '''Nested values, in serialization order'''
        out = list(self.items)
        out.extend(v for _, v in self.props)
        if self.inner is not None:
            out.append(self.inner)
        return out

    def __str__(self) -> str:
        match self.kind:
            case ValueKind.NULL:
                return 'null'

            case ValueKind.UNDEFINED:
                return 'undefined'

            case ValueKind.BOOL:
                return 'true' if self.value else 'false'

            case ValueKind.INT32 | ValueKind.FLOAT64:
                return format_number(self.value)

            case ValueKind.STRING:
                return quote_string(self.value)

            case ValueKind.ARRAY:
                return f'<array:{len(self.items)}>'

            case ValueKind.OBJECT:
                return f'<object:{len(self.props)}>'

            case ValueKind.MODULE:
                return f'<module:{self.module.name if self.module else "?"}>'

            case ValueKind.REGEXP:
                return f'<regexp:{self.value}>'

            case ValueKind.BIG_INT:
                return f'<bigint:{len(self.value)} bytes>'

            case ValueKind.SYMBOL:
                return f'<symbol:{self.atom}>'

            case ValueKind.ARRAY_BUFFER:
                return f'<arraybuffer:{len(self.value)} bytes>'

            case ValueKind.TYPED_ARRAY:
                return f'<typedarray:{self.tag} len={self.length}>'

            case ValueKind.DATE:
                return '<date>'

            case ValueKind.FUNCTION:
                return f'<function:{self.function}>'

            case _:
                return f'<tag:{self.tag}>'


NULL_VALUE = Value(ValueKind.NULL)
UNDEFINED_VALUE = Value(ValueKind.UNDEFINED)


def bigint_from_bytes(data: bytes) -> int:
    '''Big integers are serialized as little-endian two's complement limbs'''
    return int.from_bytes(data, 'little', signed = True) if data else 0
