'''JS IR - expression trees and structured statements recovered from bytecode'''

import copy
from enum import Enum, auto

from ..common import *


class Operation(Enum):
    '''IR node tags'''
    # Expressions
    LITERAL = auto()
    IDENTIFIER = auto()
    BINARY_OP = auto()
    UNARY_OP = auto()
    UPDATE = auto()
    CALL = auto()
    NEW = auto()
    MEMBER_ACCESS = auto()
    ASSIGNMENT = auto()
    CONDITIONAL = auto()
    SEQUENCE = auto()
    FUNCTION_REF = auto()
    ARRAY_LITERAL = auto()
    OBJECT_LITERAL = auto()
    PLACEHOLDER = auto()

    # Statements
    EXPRESSION_STATEMENT = auto()
    IF = auto()
    WHILE = auto()
    DO_WHILE = auto()
    FOR = auto()
    SWITCH = auto()
    TRY = auto()
    RETURN = auto()
    THROW = auto()
    BREAK = auto()
    CONTINUE = auto()
    BLOCK = auto()
    VARIABLE_DECLARATION = auto()
    FUNCTION_DECLARATION = auto()
    LABEL = auto()
    GOTO = auto()
    COMMENT = auto()

    # Parts of other nodes
    SWITCH_CASE = auto()
    PROPERTY = auto()


class JSNode:
    '''Base class for all IR nodes

    `_fields` names the attributes that make up the node. They drive
    structural equality, child iteration and `replace`. Nodes are not mutated
    once built: passes construct new nodes with `replace`.
    '''

    _fields: tuple[str, ...] = ()

    def __init__(self, operation: Operation):
        self.operation = operation

    def children(self) -> list['JSNode']:
        out = []
        for name in self._fields:
            value = getattr(self, name)
            if isinstance(value, JSNode):
                out.append(value)

            elif isinstance(value, list):
                out.extend(v for v in value if isinstance(v, JSNode))

        return out

    def replace(self, **changes) -> 'JSNode':
        node = copy.copy(self)
        for name, value in changes.items():
            setattr(node, name, value)
        return node

    def __eq__(self, other) -> bool:
        if self is other:
            return True

        if type(self) is not type(other):
            return False

        return all(getattr(self, name) == getattr(other, name) for name in self._fields)

    def __hash__(self) -> int:
        return hash(self.operation)

    def __repr__(self) -> str:
        args = ', '.join(f'{name}={getattr(self, name)!r}' for name in self._fields)
        return f'{self.__class__.__name__}({args})'


class Expression(JSNode):
    '''Base class for expressions'''
    pass


class Statement(JSNode):
    '''Base class for statements'''
    pass


# ============================================================================
# Bindings
# ============================================================================

class BindingKind(IntEnum2):
    '''Storage class of a named slot'''
    ARG     = 0
    LOC     = 1
    VAR_REF = 2
    TEMP    = 3     # synthesized stack temporary ($sN)

    @property
    def slot_prefix(self) -> str:
        return ('arg', 'loc', 'var_ref', '$s')[self]


class Slot:
    '''Variable slot of a function: kind + index'''

    __slots__ = ('kind', 'index')

    def __init__(self, kind: BindingKind, index: int):
        self.kind = kind
        self.index = index

    def __eq__(self, other) -> bool:
        return isinstance(other, Slot) and self.kind == other.kind and self.index == other.index

    def __hash__(self) -> int:
        return hash((self.kind, self.index))

    def __str__(self) -> str:
        if self.kind == BindingKind.TEMP:
            return f'$s{self.index}'
        return f'{self.kind.slot_prefix}[{self.index}]'

    def __repr__(self) -> str:
        return f'Slot({self.kind}, {self.index})'


# ============================================================================
# Expressions
# ============================================================================

class LiteralKind(IntEnum2):
    UNDEFINED   = 0
    NULL        = 1
    BOOL        = 2
    NUMBER      = 3
    STRING      = 4
    BIGINT      = 5
    REGEXP      = 6


class Literal(Expression):
    '''Primitive constant; regexps keep their flags separately'''

    _fields = ('kind', 'value', 'flags')

    def __init__(self, kind: LiteralKind, value = None, flags: str = ''):
        super().__init__(Operation.LITERAL)
        self.kind = kind
        self.value = value
        self.flags = flags

    @classmethod
    def undefined(cls) -> 'Literal':
        return cls(LiteralKind.UNDEFINED)

    @classmethod
    def null(cls) -> 'Literal':
        return cls(LiteralKind.NULL)

    @classmethod
    def boolean(cls, value: bool) -> 'Literal':
        return cls(LiteralKind.BOOL, bool(value))

    @classmethod
    def number(cls, value: int | float) -> 'Literal':
        return cls(LiteralKind.NUMBER, value)

    @classmethod
    def string(cls, value: str) -> 'Literal':
        return cls(LiteralKind.STRING, value)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Literal) or self.kind != other.kind or self.flags != other.flags:
            return False

        if self.kind == LiteralKind.NUMBER:
            # NaN literals are the same literal; 0 and -0 are not
            return format_number(self.value) == format_number(other.value)

        return self.value == other.value and type(self.value) is type(other.value)

    __hash__ = JSNode.__hash__

    def __str__(self) -> str:
        match self.kind:
            case LiteralKind.UNDEFINED:
                return 'undefined'

            case LiteralKind.NULL:
                return 'null'

            case LiteralKind.BOOL:
                return 'true' if self.value else 'false'

            case LiteralKind.NUMBER:
                return format_number(self.value)

            case LiteralKind.STRING:
                return quote_string(self.value)

            case LiteralKind.BIGINT:
                return f'{self.value}n'

            case _:
                return f'/{self.value}/{self.flags}'


class Identifier(Expression):
    '''Named reference; `slot` is set for arguments, locals, closure vars and temps'''

    _fields = ('name', 'slot')

    def __init__(self, name: str, slot: Slot | None = None):
        super().__init__(Operation.IDENTIFIER)
        self.name = name
        self.slot = slot

    def __str__(self) -> str:
        return self.name


class BinaryOp(Expression):
    '''lhs op rhs'''

    _fields = ('op', 'lhs', 'rhs')

    def __init__(self, op: str, lhs: Expression, rhs: Expression):
        super().__init__(Operation.BINARY_OP)
        self.op = op
        self.lhs = lhs
        self.rhs = rhs


class UnaryOp(Expression):
    '''Prefix operator: - + ! ~ typeof void delete await yield yield* and spread (...)'''

    _fields = ('op', 'operand')

    def __init__(self, op: str, operand: Expression):
        super().__init__(Operation.UNARY_OP)
        self.op = op
        self.operand = operand


class Update(Expression):
    '''++x, x++, --x, x--'''

    _fields = ('op', 'target', 'prefix')

    def __init__(self, op: str, target: Expression, prefix: bool):
        super().__init__(Operation.UPDATE)
        self.op = op
        self.target = target
        self.prefix = prefix


class Call(Expression):
    _fields = ('callee', 'args')

    def __init__(self, callee: Expression, args: list[Expression] = None):
        super().__init__(Operation.CALL)
        self.callee = callee
        self.args = args or []


class New(Expression):
    _fields = ('callee', 'args')

    def __init__(self, callee: Expression, args: list[Expression] = None):
        super().__init__(Operation.NEW)
        self.callee = callee
        self.args = args or []


class MemberAccess(Expression):
    '''obj.prop or obj[prop]

    Non-computed members hold the property name as a string Literal (or a
    private `#name` Identifier).
    '''

    _fields = ('obj', 'prop', 'computed')

    def __init__(self, obj: Expression, prop: Expression, computed: bool = False):
        super().__init__(Operation.MEMBER_ACCESS)
        self.obj = obj
        self.prop = prop
        self.computed = computed

    @classmethod
    def named(cls, obj: Expression, name: str) -> 'MemberAccess':
        '''obj.name when name is a plain identifier, obj["name"] otherwise'''
        return cls(obj, Literal.string(name), computed = not is_identifier(name) and not name.startswith('#'))

    @property
    def name(self) -> str | None:
        '''Property name of a non-computed access'''
        if self.computed:
            return None

        if isinstance(self.prop, Literal):
            return self.prop.value
        return getattr(self.prop, 'name', None)


class Assignment(Expression):
    '''target op value, op is = or a compound operator (+=, -=, ...)'''

    _fields = ('target', 'value', 'op')

    def __init__(self, target: Expression, value: Expression, op: str = '='):
        super().__init__(Operation.ASSIGNMENT)
        self.target = target
        self.value = value
        self.op = op


class Conditional(Expression):
    '''test ? consequent : alternate'''

    _fields = ('test', 'consequent', 'alternate')

    def __init__(self, test: Expression, consequent: Expression, alternate: Expression):
        super().__init__(Operation.CONDITIONAL)
        self.test = test
        self.consequent = consequent
        self.alternate = alternate


class Sequence(Expression):
    _fields = ('exprs',)

    def __init__(self, exprs: list[Expression]):
        super().__init__(Operation.SEQUENCE)
        self.exprs = exprs


class FunctionRef(Expression):
    '''Closure over the function at `index` of the module function table'''

    _fields = ('index', 'name')

    def __init__(self, index: int, name: str = ''):
        super().__init__(Operation.FUNCTION_REF)
        self.index = index
        self.name = name

    def __str__(self) -> str:
        return self.name or f'<function:{self.index}>'


class ArrayLiteral(Expression):
    _fields = ('elements',)

    def __init__(self, elements: list[Expression] = None):
        super().__init__(Operation.ARRAY_LITERAL)
        self.elements = elements or []


class PropertyKind(IntEnum2):
    INIT    = 0
    METHOD  = 1
    GETTER  = 2
    SETTER  = 3
    SPREAD  = 4
    PROTO   = 5


class Property(JSNode):
    '''Object literal member'''

    _fields = ('key', 'value', 'kind', 'computed')

    def __init__(self, key: Expression | None, value: Expression, kind: PropertyKind = PropertyKind.INIT,
                 computed: bool = False):
        super().__init__(Operation.PROPERTY)
        self.key = key
        self.value = value
        self.kind = kind
        self.computed = computed


class ObjectLiteral(Expression):
    _fields = ('properties',)

    def __init__(self, properties: list[Property] = None):
        super().__init__(Operation.OBJECT_LITERAL)
        self.properties = properties or []


class Placeholder(Expression):
    '''A value the lifter does not model (`<for_of_next>`, `<home_object>`, ...)'''

    _fields = ('name', 'args')

    def __init__(self, name: str, args: list[Expression] = None):
        super().__init__(Operation.PLACEHOLDER)
        self.name = name
        self.args = args or []

    def __str__(self) -> str:
        return f'<{self.name}>'


# ============================================================================
# Statements
# ============================================================================

class Block(Statement):
    _fields = ('statements',)

    def __init__(self, statements: list[Statement] = None):
        super().__init__(Operation.BLOCK)
        self.statements = statements or []

    def __len__(self) -> int:
        return len(self.statements)

    def __iter__(self):
        return iter(self.statements)


class ExpressionStatement(Statement):
    _fields = ('expr',)

    def __init__(self, expr: Expression):
        super().__init__(Operation.EXPRESSION_STATEMENT)
        self.expr = expr


class If(Statement):
    _fields = ('condition', 'then_body', 'else_body')

    def __init__(self, condition: Expression, then_body: Block, else_body: Block | None = None):
        super().__init__(Operation.IF)
        self.condition = condition
        self.then_body = then_body
        self.else_body = else_body


class While(Statement):
    _fields = ('condition', 'body')

    def __init__(self, condition: Expression, body: Block):
        super().__init__(Operation.WHILE)
        self.condition = condition
        self.body = body


class DoWhile(Statement):
    _fields = ('body', 'condition')

    def __init__(self, body: Block, condition: Expression):
        super().__init__(Operation.DO_WHILE)
        self.body = body
        self.condition = condition


class For(Statement):
    '''for (init; condition; update) body'''

    _fields = ('init', 'condition', 'update', 'body')

    def __init__(self, init: Statement | None, condition: Expression | None, update: Expression | None, body: Block):
        super().__init__(Operation.FOR)
        self.init = init
        self.condition = condition
        self.update = update
        self.body = body


class SwitchCase(JSNode):
    '''case test: body (test is None for default)'''

    _fields = ('test', 'body')

    def __init__(self, test: Expression | None, body: list[Statement] = None):
        super().__init__(Operation.SWITCH_CASE)
        self.test = test
        self.body = body or []


class Switch(Statement):
    _fields = ('discriminant', 'cases')

    def __init__(self, discriminant: Expression, cases: list[SwitchCase]):
        super().__init__(Operation.SWITCH)
        self.discriminant = discriminant
        self.cases = cases


class Try(Statement):
    '''try body catch (param) handler finally finalizer'''

    _fields = ('body', 'param', 'handler', 'finalizer')

    def __init__(self, body: Block, param: Identifier | None = None, handler: Block | None = None,
                 finalizer: Block | None = None):
        super().__init__(Operation.TRY)
        self.body = body
        self.param = param
        self.handler = handler
        self.finalizer = finalizer


class Return(Statement):
    _fields = ('value',)

    def __init__(self, value: Expression | None = None):
        super().__init__(Operation.RETURN)
        self.value = value


class Throw(Statement):
    _fields = ('value',)

    def __init__(self, value: Expression):
        super().__init__(Operation.THROW)
        self.value = value


class Break(Statement):
    _fields = ('label',)

    def __init__(self, label: str | None = None):
        super().__init__(Operation.BREAK)
        self.label = label


class Continue(Statement):
    _fields = ('label',)

    def __init__(self, label: str | None = None):
        super().__init__(Operation.CONTINUE)
        self.label = label


class VariableDeclaration(Statement):
    '''kind name = init (kind is var, let or const)'''

    _fields = ('kind', 'name', 'init')

    def __init__(self, kind: str, name: Identifier, init: Expression | None = None):
        super().__init__(Operation.VARIABLE_DECLARATION)
        self.kind = kind
        self.name = name
        self.init = init


class FunctionDeclaration(Statement):
    '''A decompiled function: header data plus its structured body'''

    _fields = ('index', 'name', 'params', 'body', 'is_async', 'is_generator', 'is_arrow')

    def __init__(self, index: int, name: str, params: list[Identifier], body: Block,
                 is_async: bool = False, is_generator: bool = False, is_arrow: bool = False):
        super().__init__(Operation.FUNCTION_DECLARATION)
        self.index = index
        self.name = name
        self.params = params
        self.body = body
        self.is_async = is_async
        self.is_generator = is_generator
        self.is_arrow = is_arrow


class Label(Statement):
    _fields = ('name',)

    def __init__(self, name: str):
        super().__init__(Operation.LABEL)
        self.name = name

    def __str__(self) -> str:
        return f'{self.name}:'


class Goto(Statement):
    _fields = ('label',)

    def __init__(self, label: str):
        super().__init__(Operation.GOTO)
        self.label = label


class Comment(Statement):
    _fields = ('text',)

    def __init__(self, text: str):
        super().__init__(Operation.COMMENT)
        self.text = text

    def __str__(self) -> str:
        return f'// {self.text}'


# ============================================================================
# Helpers
# ============================================================================

JUMP_STATEMENTS = (Return, Throw, Break, Continue, Goto)

SIDE_EFFECT_FREE = (Literal, Identifier, FunctionRef)


def walk(node: JSNode):
    '''Pre-order traversal of a node and all its descendants'''
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children()))


def read_identifiers(node: JSNode):
    '''Identifiers in read position, in evaluation order

    The target of a plain `=` and a declared name are writes and are skipped.
    Position decides, not identity: the lifter shares one Identifier object
    between a store and its reads.
    '''
    stack = [node]
    while stack:
        current = stack.pop()
        match current:
            case Identifier():
                yield current
                continue

            case Assignment(op = '=', target = Identifier()):
                children = [current.value]

            case VariableDeclaration():
                children = [current.init] if current.init is not None else []

            case _:
                children = current.children()

        stack.extend(reversed(children))


def ends_with_jump(stmts: list[Statement] | Block | None) -> bool:
    '''True when control never falls off the end of the statement list'''
    if stmts is None:
        return False

    if isinstance(stmts, Block):
        stmts = stmts.statements

    real = [s for s in stmts if not isinstance(s, (Comment, Label))]
    if not real:
        return False

    last = real[-1]
    if isinstance(last, JUMP_STATEMENTS):
        return True

    if isinstance(last, If) and last.else_body is not None:
        return ends_with_jump(last.then_body) and ends_with_jump(last.else_body)

    if isinstance(last, Block):
        return ends_with_jump(last)

    return False


def is_pure(expr: Expression) -> bool:
    '''No side effects when evaluated (conservative)'''
    match expr:
        case Literal() | Identifier() | FunctionRef():
            return True

        case BinaryOp(op = op):
            return op not in ('in', 'instanceof') and is_pure(expr.lhs) and is_pure(expr.rhs)

        case UnaryOp(op = op):
            return op in ('-', '+', '!', '~', 'typeof', 'void') and is_pure(expr.operand)

        case Conditional():
            return is_pure(expr.test) and is_pure(expr.consequent) and is_pure(expr.alternate)

        case Sequence():
            return all(is_pure(e) for e in expr.exprs)

        case ArrayLiteral():
            return all(not (isinstance(e, UnaryOp) and e.op == '...') and is_pure(e) for e in expr.elements)

        case ObjectLiteral():
            return all(p.kind != PropertyKind.SPREAD and (p.key is None or is_pure(p.key)) and is_pure(p.value)
                       for p in expr.properties)

        case _:
            return False


def negate_condition(cond: Expression) -> Expression:
    '''Negate a condition, simplifying where possible'''
    # !!a -> a only for conditions already used as booleans
    if isinstance(cond, UnaryOp) and cond.op == '!':
        return cond.operand

    if isinstance(cond, BinaryOp) and cond.op in NEGATED_COMPARISONS:
        return BinaryOp(NEGATED_COMPARISONS[cond.op], cond.lhs, cond.rhs)

    if isinstance(cond, Literal) and cond.kind == LiteralKind.BOOL:
        return Literal.boolean(not cond.value)

    return UnaryOp('!', cond)


# Relational operators are not negatable (NaN compares false both ways)
NEGATED_COMPARISONS = {
    '=='    : '!=',
    '!='    : '==',
    '==='   : '!==',
    '!=='   : '===',
}
