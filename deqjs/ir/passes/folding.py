'''
Constant folding with JavaScript semantics

Primitive values are modelled as Python values:

    undefined   UNDEFINED           null        NULL
    boolean     bool                number      float (int when integral)
    string      str

BigInts, objects and anything with a side effect are never folded.
'''

import math
import re

from ...common import *
from ..js_ir import *
from ..visitor import IRTransformer


class _Singleton:
    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return self.name


UNDEFINED = _Singleton('undefined')
NULL = _Singleton('null')
NOT_CONSTANT = _Singleton('<not constant>')

MAX_FOLDED_STRING = 4096

# StrWhiteSpaceChar: WhiteSpace and LineTerminator
JS_WHITESPACE = ('\t\n\v\f\r \u00a0\u1680\u2000\u2001\u2002\u2003\u2004\u2005\u2006'
                 '\u2007\u2008\u2009\u200a\u2028\u2029\u202f\u205f\u3000\ufeff')

DECIMAL_RE = re.compile(r'^[+-]?(?:\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)$')
RADIX_RE = {
    16: re.compile(r'^0[xX][0-9a-fA-F]+$'),
    8:  re.compile(r'^0[oO][0-7]+$'),
    2:  re.compile(r'^0[bB][01]+$'),
}


# ============================================================================
# Conversions
# ============================================================================

def normalize_number(x: float) -> int | float:
    if isinstance(x, bool):
        return int(x)

    if isinstance(x, int):
        return x

    if math.isfinite(x) and x.is_integer() and abs(x) < 2 ** 53 and not (x == 0 and math.copysign(1.0, x) < 0):
        return int(x)
    return x


def to_boolean(v) -> bool:
    if v is UNDEFINED or v is NULL:
        return False

    if isinstance(v, bool):
        return v

    if isinstance(v, (int, float)):
        return not (v == 0 or math.isnan(v))

    if isinstance(v, str):
        return v != ''

    return True


def string_to_number(s: str) -> float:
    s = s.strip(JS_WHITESPACE)
    if s == '':
        return 0.0

    for radix, pattern in RADIX_RE.items():
        if pattern.match(s):
            return float(int(s[2:], radix))

    if s in ('Infinity', '+Infinity'):
        return math.inf

    if s == '-Infinity':
        return -math.inf

    if DECIMAL_RE.match(s):
        return float(s)

    return math.nan


def to_number(v) -> float:
    if v is UNDEFINED:
        return math.nan

    if v is NULL:
        return 0.0

    if isinstance(v, bool):
        return 1.0 if v else 0.0

    if isinstance(v, (int, float)):
        return float(v)

    if isinstance(v, str):
        return string_to_number(v)

    return math.nan


def to_string(v) -> str:
    if v is UNDEFINED:
        return 'undefined'

    if v is NULL:
        return 'null'

    if isinstance(v, bool):
        return 'true' if v else 'false'

    if isinstance(v, (int, float)):
        if v == 0:
            return '0'
        return format_number(v)

    return v


def to_int32(v) -> int:
    x = to_number(v)
    if not math.isfinite(x):
        return 0

    n = int(math.trunc(x)) & 0xFFFFFFFF
    return n - 0x100000000 if n >= 0x80000000 else n


def to_uint32(v) -> int:
    return to_int32(v) & 0xFFFFFFFF


def typeof(v) -> str:
    if v is UNDEFINED:
        return 'undefined'

    if v is NULL:
        return 'object'

    if isinstance(v, bool):
        return 'boolean'

    if isinstance(v, (int, float)):
        return 'number'

    return 'string'


def same_type(a, b) -> bool:
    return typeof(a) == typeof(b) and (a is NULL) == (b is NULL)


def strict_equals(a, b) -> bool:
    if not same_type(a, b):
        return False

    if isinstance(a, (int, float)) and not isinstance(a, bool):
        return float(a) == float(b)

    if a is UNDEFINED or a is NULL:
        return True

    return a == b


def loose_equals(a, b) -> bool:
    if same_type(a, b):
        return strict_equals(a, b)

    nullish = (UNDEFINED, NULL)
    if a in nullish or b in nullish:
        return a in nullish and b in nullish

    return to_number(a) == to_number(b)


# ============================================================================
# Operators
# ============================================================================

def _divide(a: float, b: float) -> float:
    if b == 0:
        if a == 0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1.0, b)
    return a / b


def _remainder(a: float, b: float) -> float:
    if math.isnan(a) or math.isnan(b) or math.isinf(a) or b == 0:
        return math.nan

    if math.isinf(b):
        return a
    return math.fmod(a, b)


def _power(a: float, b: float) -> float:
    if math.isnan(b):
        return math.nan

    if b == 0:
        return 1.0

    if math.isnan(a) or (abs(a) == 1 and math.isinf(b)):
        return math.nan

    try:
        return math.pow(a, b)
    except OverflowError:
        return math.inf if a > 0 or float(b).is_integer() and int(b) % 2 == 0 else -math.inf
    except ValueError:
        return math.nan


def _compare(a, b, op: str):
    if isinstance(a, str) and isinstance(b, str):
        return {'<': a < b, '>': a > b, '<=': a <= b, '>=': a >= b}[op]

    x, y = to_number(a), to_number(b)
    if math.isnan(x) or math.isnan(y):
        return False
    return {'<': x < y, '>': x > y, '<=': x <= y, '>=': x >= y}[op]


def fold_binary(op: str, a, b):
    '''Value of `a op b` for primitive operands, NOT_CONSTANT when unknown'''
    match op:
        case '+':
            if isinstance(a, str) or isinstance(b, str):
                result = to_string(a) + to_string(b)
                return result if len(result) <= MAX_FOLDED_STRING else NOT_CONSTANT
            return to_number(a) + to_number(b)

        case '-':
            return to_number(a) - to_number(b)

        case '*':
            x, y = to_number(a), to_number(b)
            if (math.isinf(x) and y == 0) or (math.isinf(y) and x == 0):
                return math.nan
            return x * y

        case '/':
            return _divide(to_number(a), to_number(b))

        case '%':
            return _remainder(to_number(a), to_number(b))

        case '**':
            return _power(to_number(a), to_number(b))

        case '&':
            return to_int32(to_int32(a) & to_int32(b))

        case '|':
            return to_int32(to_int32(a) | to_int32(b))

        case '^':
            return to_int32(to_int32(a) ^ to_int32(b))

        case '<<':
            return to_int32(to_int32(a) << (to_uint32(b) & 31))

        case '>>':
            return to_int32(a) >> (to_uint32(b) & 31)

        case '>>>':
            return to_uint32(a) >> (to_uint32(b) & 31)

        case '<' | '>' | '<=' | '>=':
            return _compare(a, b, op)

        case '===':
            return strict_equals(a, b)

        case '!==':
            return not strict_equals(a, b)

        case '==':
            return loose_equals(a, b)

        case '!=':
            return not loose_equals(a, b)

        case _:
            return NOT_CONSTANT


def fold_unary(op: str, v):
    match op:
        case '-':
            return -to_number(v)

        case '+':
            return to_number(v)

        case '!':
            return not to_boolean(v)

        case '~':
            return to_int32(~to_int32(v))

        case 'typeof':
            return typeof(v)

        case 'void':
            return UNDEFINED

        case _:
            return NOT_CONSTANT


# ============================================================================
# IR bridge
# ============================================================================

def constant_value(expr: Expression):
    '''Primitive value of a literal (or global undefined/NaN/Infinity)'''
    match expr:
        case Literal(kind = LiteralKind.UNDEFINED):
            return UNDEFINED

        case Literal(kind = LiteralKind.NULL):
            return NULL

        case Literal(kind = LiteralKind.BOOL | LiteralKind.STRING):
            return expr.value

        case Literal(kind = LiteralKind.NUMBER):
            return expr.value

        case Identifier(name = 'undefined', slot = None):
            return UNDEFINED

        case Identifier(name = 'NaN', slot = None):
            return math.nan

        case Identifier(name = 'Infinity', slot = None):
            return math.inf

        case _:
            return NOT_CONSTANT


def to_literal(value) -> Literal:
    if value is UNDEFINED:
        return Literal.undefined()

    if value is NULL:
        return Literal.null()

    if isinstance(value, bool):
        return Literal.boolean(value)

    if isinstance(value, (int, float)):
        return Literal.number(normalize_number(value))

    return Literal.string(value)


def known_truthiness(expr: Expression) -> bool | None:
    '''Truthiness of an expression whose value is statically known'''
    value = constant_value(expr)
    if value is not NOT_CONSTANT:
        return to_boolean(value)

    # objects are always truthy
    if isinstance(expr, (ArrayLiteral, ObjectLiteral, FunctionRef)):
        return True

    return None


class ConstantFolder(IRTransformer):
    '''Bottom-up folding of operators over literal operands'''

    def visit_binary_op(self, node: BinaryOp) -> Expression:
        node = self.generic_visit(node)
        a = constant_value(node.lhs)

        if node.op in ('&&', '||', '??'):
            return self.fold_logical(node, a)

        b = constant_value(node.rhs)
        if a is NOT_CONSTANT or b is NOT_CONSTANT:
            return node

        result = fold_binary(node.op, a, b)
        return node if result is NOT_CONSTANT else to_literal(result)

    @staticmethod
    def fold_logical(node: BinaryOp, a) -> Expression:
        truth = known_truthiness(node.lhs)
        if truth is None or (a is NOT_CONSTANT and not is_pure(node.lhs)):
            return node

        match node.op:
            case '&&':
                return node.rhs if truth else node.lhs

            case '||':
                return node.lhs if truth else node.rhs

            case _:
                if a is NOT_CONSTANT:
                    return node.lhs
                return node.rhs if a is UNDEFINED or a is NULL else node.lhs

    def visit_unary_op(self, node: UnaryOp) -> Expression:
        node = self.generic_visit(node)

        if node.op == 'typeof' and isinstance(node.operand, FunctionRef):
            return Literal.string('function')

        if node.op == '!' and known_truthiness(node.operand) is not None and is_pure(node.operand):
            return Literal.boolean(not known_truthiness(node.operand))

        value = constant_value(node.operand)
        if value is NOT_CONSTANT:
            return node

        result = fold_unary(node.op, value)
        return node if result is NOT_CONSTANT else to_literal(result)

    def visit_conditional(self, node: Conditional) -> Expression:
        node = self.generic_visit(node)
        truth = known_truthiness(node.test)
        if truth is None or not is_pure(node.test):
            return node
        return node.consequent if truth else node.alternate


def fold_constants(node: JSNode) -> JSNode:
    return ConstantFolder().visit(node)
