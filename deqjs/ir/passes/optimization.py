'''Cleanup passes run after structuring (and deobfuscation)'''

from ...common import *
from ..js_ir import *
from ..pipeline import FixedPointPipeline, FunctionPass
from ..program import FunctionIR, ProgramIR
from ..refine import prune_labels
from ..visitor import IRTransformer, substitute
from .folding import fold_constants

logger = logging.getLogger(__name__)


class ConstantFoldingPass(FunctionPass):
    '''`1 + 2` -> `3`, `"a" + "b"` -> `"ab"`, `!true` -> `false`'''

    def run_function(self, fn: FunctionIR, program: ProgramIR) -> Block:
        return fold_constants(fn.body)


# ============================================================================
# Dead stores
# ============================================================================

def store_target(stmt: Statement) -> Identifier | None:
    '''Slot-bound target of a plain `x = value;` statement'''
    if not isinstance(stmt, ExpressionStatement) or not isinstance(stmt.expr, Assignment):
        return None

    expr = stmt.expr
    if expr.op != '=' or not isinstance(expr.target, Identifier) or expr.target.slot is None:
        return None

    return expr.target


def read_counts(body: Block) -> dict[Slot, int]:
    '''Number of times each slot is read (plain assignment targets excluded)'''
    counts = {}
    for n in read_identifiers(body):
        if n.slot is not None:
            counts[n.slot] = counts.get(n.slot, 0) + 1
    return counts


class DeadStoreRemover(IRTransformer):

    def __init__(self, dead: set[Slot]):
        self.dead = dead

    def visit_expression_statement(self, node: ExpressionStatement):
        target = store_target(node)
        if target is None or target.slot not in self.dead:
            return node

        value = node.expr.value
        if is_pure(value):
            return None
        return ExpressionStatement(value)


class DeadStorePass(FunctionPass):
    '''Stores to locals nothing reads; the stored value stays when it has side effects'''

    def run_function(self, fn: FunctionIR, program: ProgramIR) -> Block:
        reads = read_counts(fn.body)
        dead = set()
        for n in walk(fn.body):
            target = store_target(n) if isinstance(n, ExpressionStatement) else None
            if target is None or reads.get(target.slot, 0) or target.slot.kind not in (BindingKind.LOC, BindingKind.TEMP):
                continue

            binding = fn.scope.bindings.get(target.slot) if fn.scope is not None else None
            if binding is None or binding.captured:
                continue

            dead.add(target.slot)

        if not dead:
            return fn.body

        logger.debug('%s: dead stores to %s', fn.name or fn.index, ', '.join(sorted(str(s) for s in dead)))
        return DeadStoreRemover(dead).transform_block(fn.body)


# ============================================================================
# Temporary inlining
# ============================================================================

# Operators whose right operand is only evaluated sometimes
SHORT_CIRCUIT = ('&&', '||', '??')


def has_effect(node: JSNode) -> bool:
    match node:
        case Call() | New() | Assignment() | Update() | MemberAccess() | Placeholder():
            return True

        case UnaryOp(op = op):
            return op not in ('-', '+', '!', '~', 'typeof', 'void')

        case BinaryOp(op = op):
            return op in ('in', 'instanceof')

        case _:
            return False


def read_first(expr: Expression, slot: Slot) -> bool:
    '''The read of `slot` happens unconditionally and before any side effect of `expr`'''
    state = {'effect': False}

    def visit(node: JSNode, conditional: bool, store: bool = False) -> bool | None:
        if isinstance(node, Identifier):
            if node.slot == slot and not store:
                return not state['effect'] and not conditional
            return None

        children = node.children()
        for i, child in enumerate(children):
            maybe = conditional
            if isinstance(node, BinaryOp) and node.op in SHORT_CIRCUIT and i == 1:
                maybe = True
            elif isinstance(node, Conditional) and i > 0:
                maybe = True

            # the target of a plain store is written, not read
            target = isinstance(node, Assignment) and node.op == '=' and i == 0
            found = visit(child, maybe, target)
            if found is not None:
                return found

        # a member store target only takes effect once the value is computed
        if has_effect(node) and not store:
            state['effect'] = True
        return None

    return visit(expr, False) is True


def reading_expression(stmt: Statement) -> Expression | None:
    '''The part of `stmt` evaluated before anything else'''
    match stmt:
        case ExpressionStatement():
            return stmt.expr

        case Return() | Throw():
            return stmt.value

        case If():
            return stmt.condition

        case Switch():
            return stmt.discriminant

        case VariableDeclaration():
            return stmt.init

        case _:
            return None


class TempInliner(IRTransformer):

    def __init__(self, reads: dict[Slot, int], stores: dict[Slot, int]):
        self.reads = reads
        self.stores = stores

    def visit_block(self, node: Block) -> Block:
        node = self.generic_visit(node)
        stmts = self.inline(node.statements)
        return node if stmts is node.statements else Block(stmts)

    def visit_switch_case(self, node: SwitchCase) -> SwitchCase:
        node = self.generic_visit(node)
        stmts = self.inline(node.body)
        return node if stmts is node.body else SwitchCase(node.test, stmts)

    def inline(self, stmts: list[Statement]) -> list[Statement]:
        out = list(stmts)
        changed = False
        i = 0
        while i < len(out) - 1:
            target = store_target(out[i])
            nxt = out[i + 1]
            if target is None or target.slot.kind != BindingKind.TEMP \
                    or self.reads.get(target.slot, 0) != 1 or self.stores.get(target.slot, 0) != 1:
                i += 1
                continue

            expr = reading_expression(nxt)
            value = out[i].expr.value
            if expr is None or not any(n == target for n in walk(expr)) or not (is_pure(value) or read_first(expr, target.slot)):
                i += 1
                continue

            new_expr = substitute(expr, lambda n: value if isinstance(n, Identifier) and n.slot == target.slot else None)
            out[i:i + 2] = [self.rebuild(nxt, new_expr)]
            changed = True

        return out if changed else stmts

    @staticmethod
    def rebuild(stmt: Statement, expr: Expression) -> Statement:
        match stmt:
            case ExpressionStatement():
                return ExpressionStatement(expr)

            case Return() | Throw():
                return stmt.replace(value = expr)

            case If():
                return stmt.replace(condition = expr)

            case Switch():
                return stmt.replace(discriminant = expr)

            case _:
                return stmt.replace(init = expr)


class TempInliningPass(FunctionPass):
    '''`$s0 = f(); return $s0 + 1;` -> `return f() + 1;`'''

    def run_function(self, fn: FunctionIR, program: ProgramIR) -> Block:
        stores = {}
        for n in walk(fn.body):
            if isinstance(n, (Assignment, Update)) and isinstance(n.target, Identifier) and n.target.slot is not None:
                stores[n.target.slot] = stores.get(n.target.slot, 0) + 1

        return TempInliner(read_counts(fn.body), stores).transform_block(fn.body)


# ============================================================================
# Returns and labels
# ============================================================================

class TrailingReturnPass(FunctionPass):
    '''Drop the `return;` / `return undefined;` ending a function body'''

    def run_function(self, fn: FunctionIR, program: ProgramIR) -> Block:
        stmts = fn.body.statements
        if not stmts or not isinstance(stmts[-1], Return):
            return fn.body

        value = stmts[-1].value
        if value is None or isinstance(value, Literal) and value.kind == LiteralKind.UNDEFINED:
            return Block(stmts[:-1])
        return fn.body


class GotoCleaner(IRTransformer):

    def visit_block(self, node: Block) -> Block:
        node = self.generic_visit(node)
        stmts = self.clean(node.statements)
        return node if stmts is node.statements else Block(stmts)

    def visit_switch_case(self, node: SwitchCase) -> SwitchCase:
        node = self.generic_visit(node)
        stmts = self.clean(node.body)
        return node if stmts is node.body else SwitchCase(node.test, stmts)

    @staticmethod
    def clean(stmts: list[Statement]) -> list[Statement]:
        '''`goto L; L:` -> `L:`'''
        out = [s for i, s in enumerate(stmts)
               if not (isinstance(s, Goto) and i + 1 < len(stmts)
                       and isinstance(stmts[i + 1], Label) and stmts[i + 1].name == s.label)]
        return out if len(out) != len(stmts) else stmts


class LabelCleanupPass(FunctionPass):
    '''Gotos to the next statement and labels nothing jumps to'''

    def run_function(self, fn: FunctionIR, program: ProgramIR) -> Block:
        return prune_labels(GotoCleaner().transform_block(fn.body))


OPTIMIZATION_PASSES = (
    ConstantFoldingPass,
    TempInliningPass,
    DeadStorePass,
    TrailingReturnPass,
    LabelCleanupPass,
)


def build_optimization_pipeline(max_iterations: int | None = None) -> FixedPointPipeline:
    if max_iterations is None:
        max_iterations = default_optimize_max_iterations()
    return FixedPointPipeline([cls() for cls in OPTIMIZATION_PASSES], max_iterations, ProgramIR.snapshot)
