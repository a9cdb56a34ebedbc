'''JavaScript emitter - structured IR to source text

Two modes share the walker and differ only in formatting policy:

    pseudo      readable names, minimal parentheses, `else if` chains
    literal     raw slot names (loc[0], arg[1], var_ref[2]) and every
                binary expression parenthesized
'''

from ..common import *
from ..ir.js_ir import *
from ..ir.program import FunctionIR
from ..ir.visitor import IRVisitor
from ..quickjs import FunctionKind
from .emitter import Emitter, register_mode


# ============================================================================
# Precedence
# ============================================================================

PREC_SEQUENCE       = 1
PREC_ASSIGNMENT     = 2
PREC_CONDITIONAL    = 2
PREC_NULLISH        = 3
PREC_UNARY          = 14
PREC_POSTFIX        = 15
PREC_CALL           = 17
PREC_PRIMARY        = 18

BINARY_PRECEDENCE = {
    '??'            : 3,
    '||'            : 3,
    '&&'            : 4,
    '|'             : 5,
    '^'             : 6,
    '&'             : 7,
    '=='            : 8,
    '!='            : 8,
    '==='           : 8,
    '!=='           : 8,
    '<'             : 9,
    '>'             : 9,
    '<='            : 9,
    '>='            : 9,
    'in'            : 9,
    'instanceof'    : 9,
    '<<'            : 10,
    '>>'            : 10,
    '>>>'           : 10,
    '+'             : 11,
    '-'             : 11,
    '*'             : 12,
    '/'             : 12,
    '%'             : 12,
    '**'            : 13,
}

# `a ?? b || c` is a syntax error without parentheses
LOGICAL_OPS = ('||', '&&')

WORD_UNARY_OPS = ('typeof', 'void', 'delete', 'await', 'yield', 'yield*')


class JavaScriptEmitter(IRVisitor, Emitter):
    '''Readable JavaScript (`pseudo` mode)'''

    parenthesize_binary = False
    raw_slot_names      = False
    show_warnings       = True

    def __init__(self, indent: str | None = None, optimize: bool = False):
        Emitter.__init__(self, indent, optimize)

    # ============================================================================
    # Functions
    # ============================================================================

    def emit_function(self, fn: FunctionIR) -> str:
        if fn.fallback:
            lines = [f'// Pseudo decompilation error: {fn.error}']
            lines.extend(f'{self.indent}{line}' for line in fn.listing)
            return '\n'.join(lines) + '\n'

        header = self.function_header(fn)
        stmts = fn.body.statements

        if self.optimize and not fn.warnings and len(stmts) == 1 and isinstance(stmts[0], Return):
            return f'{header} {{ {self.statement_lines(stmts[0], 0)[0]} }}\n'

        lines = [f'{header} {{']
        if self.show_warnings:
            lines.extend(f'{self.indent}// warning: {w.message}' for w in fn.warnings)
        lines.extend(self.block_lines(stmts, 1))
        lines.append('}')
        return '\n'.join(lines) + '\n'

    def function_name(self, fn: FunctionIR) -> str:
        return fn.name or f'<function:{fn.index}>'

    def function_header(self, fn: FunctionIR) -> str:
        info = fn.function
        params = ', '.join(self.expr(p) for p in fn.params)

        prefix = 'async ' if info.kind in (FunctionKind.ASYNC, FunctionKind.ASYNC_GENERATOR) else ''
        star = '*' if info.kind in (FunctionKind.GENERATOR, FunctionKind.ASYNC_GENERATOR) else ''

        if info.is_arrow and fn.index != 0:
            return f'{prefix}const {self.function_name(fn)} = ({params}) =>'
        return f'{prefix}function{star} {self.function_name(fn)}({params})'

    # ============================================================================
    # Statements
    # ============================================================================

    def block_lines(self, stmts: list[Statement], level: int) -> list[str]:
        lines = []
        for stmt in stmts:
            lines.extend(self.statement_lines(stmt, level))
        return lines

    def statement_lines(self, stmt: Statement, level: int) -> list[str]:
        return self.visit(stmt, level)

    def pad(self, level: int) -> str:
        return self.indent * level

    def braced(self, head: str, body: Block | list[Statement], level: int, tail: str = '}') -> list[str]:
        stmts = body.statements if isinstance(body, Block) else body
        return [f'{self.pad(level)}{head} {{', *self.block_lines(stmts, level + 1), f'{self.pad(level)}{tail}']

    def visit_block(self, node: Block, level: int) -> list[str]:
        return [f'{self.pad(level)}{{', *self.block_lines(node.statements, level + 1), f'{self.pad(level)}}}']

    def visit_expression_statement(self, node: ExpressionStatement, level: int) -> list[str]:
        text = self.expr(node.expr)
        # a leading `{` or `function` would parse as a statement
        if text.startswith('{') or text.startswith('function'):
            text = f'({text})'
        return [f'{self.pad(level)}{text};']

    def visit_if(self, node: If, level: int) -> list[str]:
        pad = self.pad(level)
        lines = [f'{pad}if ({self.expr(node.condition)}) {{']
        lines.extend(self.block_lines(node.then_body.statements, level + 1))

        else_body = node.else_body
        while else_body is not None and else_body.statements:
            inner = else_body.statements
            if len(inner) == 1 and isinstance(inner[0], If):
                lines.append(f'{pad}}} else if ({self.expr(inner[0].condition)}) {{')
                lines.extend(self.block_lines(inner[0].then_body.statements, level + 1))
                else_body = inner[0].else_body
                continue

            lines.append(f'{pad}}} else {{')
            lines.extend(self.block_lines(inner, level + 1))
            break

        lines.append(f'{pad}}}')
        return lines

    def visit_while(self, node: While, level: int) -> list[str]:
        return self.braced(f'while ({self.expr(node.condition)})', node.body, level)

    def visit_do_while(self, node: DoWhile, level: int) -> list[str]:
        return self.braced('do', node.body, level, f'}} while ({self.expr(node.condition)});')

    def for_init(self, init: Statement | None) -> str:
        match init:
            case None:
                return ''

            case VariableDeclaration():
                return self.declaration(init)

            case ExpressionStatement():
                return self.expr(init.expr)

            case _:
                return self.statement_lines(init, 0)[0].rstrip(';')

    def visit_for(self, node: For, level: int) -> list[str]:
        init = self.for_init(node.init)
        cond = self.expr(node.condition) if node.condition is not None else ''
        update = self.expr(node.update) if node.update is not None else ''
        return self.braced(f'for ({init}; {cond}; {update})', node.body, level)

    def visit_switch(self, node: Switch, level: int) -> list[str]:
        pad = self.pad(level)
        case_pad = self.pad(level + 1)
        lines = [f'{pad}switch ({self.expr(node.discriminant)}) {{']
        for case in node.cases:
            label = 'default:' if case.test is None else f'case {self.expr(case.test)}:'

            # lexical declarations need their own block
            if any(isinstance(s, VariableDeclaration) and s.kind != 'var' for s in case.body):
                lines.append(f'{case_pad}{label} {{')
                lines.extend(self.block_lines(case.body, level + 2))
                lines.append(f'{case_pad}}}')
            else:
                lines.append(f'{case_pad}{label}')
                lines.extend(self.block_lines(case.body, level + 2))

        lines.append(f'{pad}}}')
        return lines

    def visit_try(self, node: Try, level: int) -> list[str]:
        pad = self.pad(level)
        lines = [f'{pad}try {{', *self.block_lines(node.body.statements, level + 1)]

        if node.handler is not None:
            head = f'catch ({self.expr(node.param)})' if node.param is not None else 'catch'
            lines.append(f'{pad}}} {head} {{')
            lines.extend(self.block_lines(node.handler.statements, level + 1))

        if node.finalizer is not None:
            lines.append(f'{pad}}} finally {{')
            lines.extend(self.block_lines(node.finalizer.statements, level + 1))

        lines.append(f'{pad}}}')
        return lines

    def visit_return(self, node: Return, level: int) -> list[str]:
        if node.value is None:
            return [f'{self.pad(level)}return;']
        return [f'{self.pad(level)}return {self.expr(node.value)};']

    def visit_throw(self, node: Throw, level: int) -> list[str]:
        return [f'{self.pad(level)}throw {self.expr(node.value)};']

    def visit_break(self, node: Break, level: int) -> list[str]:
        return [f'{self.pad(level)}break{" " + node.label if node.label else ""};']

    def visit_continue(self, node: Continue, level: int) -> list[str]:
        return [f'{self.pad(level)}continue{" " + node.label if node.label else ""};']

    def declaration(self, node: VariableDeclaration) -> str:
        name = self.expr(node.name)
        if node.init is None:
            return f'{node.kind} {name}'
        return f'{node.kind} {name} = {self.expr(node.init, PREC_ASSIGNMENT)}'

    def visit_variable_declaration(self, node: VariableDeclaration, level: int) -> list[str]:
        return [f'{self.pad(level)}{self.declaration(node)};']

    def visit_function_declaration(self, node: FunctionDeclaration, level: int) -> list[str]:
        prefix = 'async ' if node.is_async else ''
        star = '*' if node.is_generator else ''
        params = ', '.join(self.expr(p) for p in node.params)
        return self.braced(f'{prefix}function{star} {node.name}({params})', node.body, level)

    def visit_label(self, node: Label, level: int) -> list[str]:
        return [f'{self.pad(level)}{node.name}:']

    def visit_goto(self, node: Goto, level: int) -> list[str]:
        return [f'{self.pad(level)}goto {node.label};']

    def visit_comment(self, node: Comment, level: int) -> list[str]:
        return [f'{self.pad(level)}// {node.text}']

    def visit_switch_case(self, node: SwitchCase, level: int) -> list[str]:
        label = 'default:' if node.test is None else f'case {self.expr(node.test)}:'
        return [f'{self.pad(level)}{label}', *self.block_lines(node.body, level + 1)]

    # ============================================================================
    # Expressions
    # ============================================================================

    def expr(self, node: Expression, min_prec: int = 0) -> str:
        '''Render `node`, parenthesized when it binds looser than `min_prec`'''
        text, prec = self.visit(node, None)
        return f'({text})' if prec < min_prec else text

    def visit_literal(self, node: Literal, _) -> tuple[str, int]:
        text = str(node)
        if node.kind == LiteralKind.NUMBER and text.startswith('-'):
            return text, PREC_UNARY
        return text, PREC_PRIMARY

    def visit_identifier(self, node: Identifier, _) -> tuple[str, int]:
        if self.raw_slot_names and node.slot is not None:
            return str(node.slot), PREC_PRIMARY
        return node.name, PREC_PRIMARY

    def visit_binary_op(self, node: BinaryOp, _) -> tuple[str, int]:
        prec = BINARY_PRECEDENCE.get(node.op, PREC_NULLISH)
        right_assoc = node.op == '**'

        lhs = self.expr(node.lhs, prec + 1 if right_assoc else prec)
        rhs = self.expr(node.rhs, prec if right_assoc else prec + 1)

        if right_assoc and isinstance(node.lhs, UnaryOp) and not lhs.startswith('('):
            lhs = f'({lhs})'

        if self.mixes_nullish(node, node.lhs) and not lhs.startswith('('):
            lhs = f'({lhs})'
        if self.mixes_nullish(node, node.rhs) and not rhs.startswith('('):
            rhs = f'({rhs})'

        text = f'{lhs} {node.op} {rhs}'
        if self.parenthesize_binary:
            return f'({text})', PREC_PRIMARY
        return text, prec

    @staticmethod
    def mixes_nullish(parent: BinaryOp, child: Expression) -> bool:
        if not isinstance(child, BinaryOp):
            return False
        return (parent.op == '??' and child.op in LOGICAL_OPS) or (parent.op in LOGICAL_OPS and child.op == '??')

    def visit_unary_op(self, node: UnaryOp, _) -> tuple[str, int]:
        op = node.op
        if op == '...':
            return f'...{self.expr(node.operand, PREC_ASSIGNMENT)}', PREC_ASSIGNMENT

        if op in ('yield', 'yield*'):
            return f'{op} {self.expr(node.operand, PREC_ASSIGNMENT)}', PREC_ASSIGNMENT

        operand = self.expr(node.operand, PREC_UNARY)
        if op in WORD_UNARY_OPS:
            return f'{op} {operand}', PREC_UNARY

        # `- -x` must not become `--x`
        if operand.startswith(op):
            operand = f'({operand})'
        return f'{op}{operand}', PREC_UNARY

    def visit_update(self, node: Update, _) -> tuple[str, int]:
        target = self.expr(node.target, PREC_POSTFIX)
        if node.prefix:
            return f'{node.op}{target}', PREC_UNARY
        return f'{target}{node.op}', PREC_POSTFIX

    def arguments(self, args: list[Expression]) -> str:
        return ', '.join(self.expr(a, PREC_ASSIGNMENT) for a in args)

    def visit_call(self, node: Call, _) -> tuple[str, int]:
        return f'{self.expr(node.callee, PREC_CALL)}({self.arguments(node.args)})', PREC_CALL

    def visit_new(self, node: New, _) -> tuple[str, int]:
        callee = self.expr(node.callee, PREC_CALL)
        if isinstance(node.callee, Call) and not callee.startswith('('):
            callee = f'({callee})'
        return f'new {callee}({self.arguments(node.args)})', PREC_CALL

    def visit_member_access(self, node: MemberAccess, _) -> tuple[str, int]:
        obj = self.expr(node.obj, PREC_CALL)
        if isinstance(node.obj, Literal) and node.obj.kind == LiteralKind.NUMBER and not obj.startswith('('):
            obj = f'({obj})'

        if node.computed:
            return f'{obj}[{self.expr(node.prop)}]', PREC_CALL

        if isinstance(node.prop, Literal):
            return f'{obj}.{node.prop.value}', PREC_CALL
        return f'{obj}.{self.expr(node.prop)}', PREC_CALL

    def visit_assignment(self, node: Assignment, _) -> tuple[str, int]:
        target = self.expr(node.target, PREC_POSTFIX)
        value = self.expr(node.value, PREC_ASSIGNMENT)
        return f'{target} {node.op} {value}', PREC_ASSIGNMENT

    def visit_conditional(self, node: Conditional, _) -> tuple[str, int]:
        test = self.expr(node.test, PREC_NULLISH)
        consequent = self.expr(node.consequent, PREC_ASSIGNMENT)
        alternate = self.expr(node.alternate, PREC_ASSIGNMENT)
        return f'{test} ? {consequent} : {alternate}', PREC_CONDITIONAL

    def visit_sequence(self, node: Sequence, _) -> tuple[str, int]:
        return ', '.join(self.expr(e, PREC_ASSIGNMENT) for e in node.exprs), PREC_SEQUENCE

    def visit_function_ref(self, node: FunctionRef, _) -> tuple[str, int]:
        return str(node), PREC_PRIMARY

    def visit_array_literal(self, node: ArrayLiteral, _) -> tuple[str, int]:
        return f'[{self.arguments(node.elements)}]', PREC_PRIMARY

    def property_key(self, prop: Property) -> str:
        if prop.computed:
            return f'[{self.expr(prop.key, PREC_ASSIGNMENT)}]'

        if isinstance(prop.key, Literal) and prop.key.kind == LiteralKind.STRING:
            return prop.key.value if is_identifier(prop.key.value) else quote_string(prop.key.value)
        return self.expr(prop.key)

    def visit_property(self, node: Property, _) -> tuple[str, int]:
        value = self.expr(node.value, PREC_ASSIGNMENT)
        match node.kind:
            case PropertyKind.SPREAD:
                return f'...{value}', PREC_ASSIGNMENT

            case PropertyKind.PROTO:
                return f'__proto__: {value}', PREC_ASSIGNMENT

            case PropertyKind.GETTER:
                return f'get {self.property_key(node)}: {value}', PREC_ASSIGNMENT

            case PropertyKind.SETTER:
                return f'set {self.property_key(node)}: {value}', PREC_ASSIGNMENT

            case _:
                return f'{self.property_key(node)}: {value}', PREC_ASSIGNMENT

    def visit_object_literal(self, node: ObjectLiteral, _) -> tuple[str, int]:
        if not node.properties:
            return '{}', PREC_PRIMARY
        return '{ ' + ', '.join(self.visit(p, None)[0] for p in node.properties) + ' }', PREC_PRIMARY

    def visit_placeholder(self, node: Placeholder, _) -> tuple[str, int]:
        if not node.args:
            return str(node), PREC_PRIMARY
        return f'{node}({self.arguments(node.args)})', PREC_CALL


class LiteralJavaScriptEmitter(JavaScriptEmitter):
    '''Closer-to-literal rendering (`literal` mode)'''

    parenthesize_binary = True
    raw_slot_names      = True


register_mode('pseudo', JavaScriptEmitter)
register_mode('literal', LiteralJavaScriptEmitter)


def generate_javascript(fn: FunctionIR, indent: str | None = None, optimize: bool = False) -> str:
    return JavaScriptEmitter(indent, optimize).emit_function(fn)
