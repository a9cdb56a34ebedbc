import math
from decimal import Decimal

from .config import *

JS_RESERVED_WORDS = frozenset({
    'break', 'case', 'catch', 'class', 'const', 'continue', 'debugger', 'default', 'delete',
    'do', 'else', 'enum', 'export', 'extends', 'false', 'finally', 'for', 'function', 'if',
    'import', 'in', 'instanceof', 'new', 'null', 'return', 'super', 'switch', 'this', 'throw',
    'true', 'try', 'typeof', 'var', 'void', 'while', 'with', 'yield', 'let', 'static',
    'implements', 'interface', 'package', 'private', 'protected', 'public', 'await',
})


def format_number(value: int | float) -> str:
    '''Render a number the way JavaScript's Number.prototype.toString does'''
    if isinstance(value, bool):
        return 'true' if value else 'false'

    if isinstance(value, int):
        return str(value)

    if math.isnan(value):
        return 'NaN'

    if math.isinf(value):
        return 'Infinity' if value > 0 else '-Infinity'

    if value == 0:
        return '-0' if math.copysign(1.0, value) < 0 else '0'

    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))

    text = repr(value)
    if 'e' not in text:
        return text

    mantissa, exponent = text.split('e')
    exponent = int(exponent)
    if -7 < exponent < 21:
        return format(Decimal(text), 'f')

    sign = '+' if exponent > 0 else '-'
    return f'{mantissa}e{sign}{abs(exponent)}'


_STRING_ESCAPES = {
    '\\'    : '\\\\',
    '"'     : '\\"',
    '\n'    : '\\n',
    '\r'    : '\\r',
    '\t'    : '\\t',
    '\b'    : '\\b',
    '\f'    : '\\f',
    '\v'    : '\\v',
    '\u2028'  : '\\u2028',
    '\u2029'  : '\\u2029',
}


def quote_string(value: str) -> str:
    '''Double-quoted JavaScript string literal'''
    out = []
    for ch in value:
        escaped = _STRING_ESCAPES.get(ch)
        if escaped is not None:
            out.append(escaped)

        elif ord(ch) < 0x20 or ord(ch) == 0x7F:
            out.append(f'\\x{ord(ch):02x}')

        elif 0xD800 <= ord(ch) <= 0xDFFF:
            # lone surrogate from a UTF-16 string
            out.append(f'\\u{ord(ch):04x}')

        else:
            out.append(ch)

    return '"' + ''.join(out) + '"'


def is_identifier(name: str) -> bool:
    '''Plain ASCII identifier usable without quoting'''
    if not name or name in JS_RESERVED_WORDS:
        return False

    if not (name[0] in '_$' or name[0].isascii() and name[0].isalpha()):
        return False

    return all(ch in '_$' or ch.isascii() and ch.isalnum() for ch in name[1:])


def sanitize_ident(name: str) -> str:
    '''Coerce an arbitrary atom into an identifier ([A-Za-z_$][A-Za-z0-9_$]*)'''
    if not name:
        return '_'

    out = []
    for i, ch in enumerate(name):
        ok = ch in '_$' or ch.isascii() and (ch.isalpha() if i == 0 else ch.isalnum())
        out.append(ch if ok else '_')

    result = ''.join(out)
    if result in JS_RESERVED_WORDS:
        result += '_'

    return result
