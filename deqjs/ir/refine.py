'''
Structured-tree refinements applied after control flow recovery

The structurer only produces `while (true)` loops, nested `if`/`else` and
plain `try`. These rewrites turn the shapes it leaves into the statements a
programmer writes:

    while (true) { if (c) break; ... }          -> while (!c) { ... }
    while (true) { ...; if (c) break; }         -> do { ... } while (!c)
    x = a; while (c) { ...; x++; }              -> for (x = a; c; x++) { ... }
    if (d === 1) ... else if (d === 2) ...      -> switch (d) { case 1: ... }
    try { } catch (e) { try { } finally { F } } finally { F }
                                                -> try { } catch (e) { } finally { F }

All rewrites run to a fixed point, so refining a refined tree is a no-op.
'''

from ..common import *
from .js_ir import *
from .visitor import IRTransformer

logger = logging.getLogger(__name__)

MIN_SWITCH_CASES = 3
MAX_REFINE_ROUNDS = 16


# ============================================================================
# Helpers
# ============================================================================

def is_true(expr: Expression | None) -> bool:
    return isinstance(expr, Literal) and expr.kind == LiteralKind.BOOL and expr.value is True


def is_plain_break(stmt: Statement) -> bool:
    return isinstance(stmt, Break) and stmt.label is None


def is_plain_continue(stmt: Statement) -> bool:
    return isinstance(stmt, Continue) and stmt.label is None


def single_jump(body: Block | None, kind: type) -> bool:
    '''`{ break; }` / `{ continue; }` without a label'''
    return (body is not None and len(body.statements) == 1
            and isinstance(body.statements[0], kind) and body.statements[0].label is None)


def loop_jumps(stmts: list[Statement], kind: type, labeled: bool = True) -> bool:
    '''True when `stmts` holds a jump of `kind` that targets the enclosing loop

    Unlabeled jumps nested in inner loops bind to those loops and do not
    count (unlabeled `break` inside a switch likewise); labeled ones always
    count when `labeled` is set.
    '''
    pending = list(stmts)
    while pending:
        node = pending.pop()
        if isinstance(node, kind):
            if node.label is None or labeled:
                return True
            continue

        if isinstance(node, (While, DoWhile, For)):
            if labeled:
                pending.extend(n for n in walk(node.body) if isinstance(n, kind) and n.label is not None)
            continue

        if isinstance(node, Switch) and kind is Break:
            if labeled:
                pending.extend(n for c in node.cases for s in c.body for n in walk(s)
                               if isinstance(n, Break) and n.label is not None)
            continue

        if isinstance(node, Expression):
            continue

        pending.extend(node.children())

    return False


def strip_trailing_continue(stmts: list[Statement]) -> list[Statement]:
    '''A `continue` that is the last thing a loop body does is implied'''
    if not stmts:
        return stmts

    last = stmts[-1]
    if is_plain_continue(last):
        return strip_trailing_continue(stmts[:-1])

    if isinstance(last, If):
        then_body = strip_trailing_continue(last.then_body.statements)
        else_body = strip_trailing_continue(last.else_body.statements) if last.else_body is not None else None
        if then_body is not last.then_body.statements or (else_body is not None and else_body is not last.else_body.statements):
            return stmts[:-1] + [If(last.condition, Block(then_body), Block(else_body) if else_body is not None else None)]

    return stmts


def strict_equality(expr: Expression) -> tuple[Expression, Literal] | None:
    '''`d === K` or `K === d` with a constant case value'''
    if not isinstance(expr, BinaryOp) or expr.op != '===':
        return None

    for subject, value in ((expr.lhs, expr.rhs), (expr.rhs, expr.lhs)):
        if isinstance(value, Literal) and value.kind in (LiteralKind.NUMBER, LiteralKind.STRING) \
                and not isinstance(subject, Literal) and is_pure(subject):
            return subject, value

    return None


def updates(expr: Expression, target: Identifier) -> bool:
    match expr:
        case Update(target = t):
            return t == target

        case Assignment(target = t):
            return t == target

        case _:
            return False


def reads(node: JSNode, target: Identifier) -> bool:
    return any(n == target for n in walk(node))


# ============================================================================
# Refiner
# ============================================================================

class StructureRefiner(IRTransformer):

    def visit_block(self, node: Block) -> Block:
        node = self.generic_visit(node)
        stmts = self.refine_list(node.statements)
        return node if stmts is node.statements else Block(stmts)

    def visit_switch_case(self, node: SwitchCase) -> SwitchCase:
        node = self.generic_visit(node)
        stmts = self.refine_list(node.body)
        return node if stmts is node.body else SwitchCase(node.test, stmts)

    def visit_if(self, node: If) -> Statement | None:
        node = self.generic_visit(node)
        then_empty = not node.then_body.statements
        else_empty = node.else_body is None or not node.else_body.statements

        if then_empty and else_empty:
            return None if is_pure(node.condition) else ExpressionStatement(node.condition)

        if then_empty:
            return If(negate_condition(node.condition), node.else_body)

        if node.else_body is not None and else_empty:
            return If(node.condition, node.then_body)

        return node

    def visit_while(self, node: While) -> Statement:
        node = self.generic_visit(node)
        body = strip_trailing_continue(node.body.statements)

        if is_true(node.condition) and body:
            first = body[0]
            if isinstance(first, If) and first.else_body is None and single_jump(first.then_body, Break):
                return While(negate_condition(first.condition), Block(body[1:]))

            last = body[-1]
            if isinstance(last, If) and last.else_body is None and single_jump(last.then_body, Break) \
                    and not loop_jumps(body[:-1], Continue):
                return DoWhile(Block(body[:-1]), negate_condition(last.condition))

            if len(body) >= 2 and is_plain_break(last):
                test = body[-2]
                if isinstance(test, If) and test.else_body is None and single_jump(test.then_body, Continue) \
                        and not loop_jumps(body[:-2], Continue):
                    return DoWhile(Block(body[:-2]), test.condition)

        if body is not node.body.statements:
            return While(node.condition, Block(body))
        return node

    def visit_do_while(self, node: DoWhile) -> Statement:
        node = self.generic_visit(node)
        body = node.body.statements
        if body and is_plain_continue(body[-1]):
            return DoWhile(Block(body[:-1]), node.condition)
        return node

    def visit_for(self, node: For) -> Statement:
        node = self.generic_visit(node)
        body = strip_trailing_continue(node.body.statements)
        if body is not node.body.statements:
            return For(node.init, node.condition, node.update, Block(body))
        return node

    def visit_try(self, node: Try) -> Statement:
        node = self.generic_visit(node)
        if node.finalizer is None or node.handler is None or len(node.handler.statements) != 1:
            return node

        inner = node.handler.statements[0]
        if isinstance(inner, Try) and inner.handler is None and inner.finalizer == node.finalizer:
            return Try(node.body, node.param, inner.body, node.finalizer)
        return node

    # ---------------------------------------------------------- statement lists --
    def refine_list(self, stmts: list[Statement]) -> list[Statement]:
        out = self.promote_for(stmts)
        out = self.switch_from_chain(out)
        out = self.switch_from_guards(out)
        return out

    def promote_for(self, stmts: list[Statement]) -> list[Statement]:
        '''`x = a; while (c(x)) { ...; x = f(x); }` -> `for (x = a; c(x); x = f(x)) { ... }`'''
        out = []
        changed = False
        for stmt in stmts:
            parts = self.for_parts(out[-1], stmt) if out and isinstance(stmt, While) else None
            if parts is not None:
                init = out.pop()
                out.append(For(init, stmt.condition, parts[0], Block(parts[1])))
                logger.debug('for loop over %s', init.expr.target)
                changed = True
                continue
            out.append(stmt)

        return out if changed else stmts

    @staticmethod
    def for_parts(init: Statement | None, loop: While) -> tuple[Expression, list[Statement]] | None:
        if not isinstance(init, ExpressionStatement) or not isinstance(init.expr, Assignment):
            return None

        target = init.expr.target
        if not isinstance(target, Identifier) or init.expr.op != '=' or is_true(loop.condition):
            return None

        body = loop.body.statements
        if not body or not isinstance(body[-1], ExpressionStatement) or not updates(body[-1].expr, target):
            return None

        if not reads(loop.condition, target) or loop_jumps(body[:-1], Continue):
            return None

        return body[-1].expr, body[:-1]

    def switch_from_chain(self, stmts: list[Statement]) -> list[Statement]:
        '''if (d === 1) A else if (d === 2) B else if (d === 3) C else D'''
        out = None
        for i, stmt in enumerate(stmts):
            switch = self.chain_to_switch(stmt) if isinstance(stmt, If) else None
            if switch is not None and out is None:
                out = list(stmts[:i])
            if out is not None:
                out.append(switch if switch is not None else stmt)

        return stmts if out is None else out

    def chain_to_switch(self, node: If) -> Switch | None:
        subject = None
        cases = []
        default = None
        tail: list[SwitchCase] = []
        current = node
        while True:
            match = strict_equality(current.condition)
            if match is None or (subject is not None and match[0] != subject):
                # chain ended at a test of something else: it becomes the default
                default = [current]
                break

            subject = match[0]
            cases.append((match[1], current.then_body.statements))
            rest = current.else_body.statements if current.else_body is not None else []
            if len(rest) == 1 and isinstance(rest[0], If):
                current = rest[0]
                continue

            if len(rest) == 1 and isinstance(rest[0], Switch) and rest[0].discriminant == subject:
                # the inner part of the chain was already converted
                tail = rest[0].cases
                break

            default = rest or None
            break

        if len(cases) + len(tail) < MIN_SWITCH_CASES:
            return None

        bodies = [body for _, body in cases] + ([default] if default else [])
        if any(loop_jumps(body, Break, labeled = False) for body in bodies):
            return None

        switch_cases = []
        for test, body in cases:
            body = list(body)
            if not ends_with_jump(body):
                body.append(Break())
            switch_cases.append(SwitchCase(test, body))

        switch_cases.extend(tail)
        if default:
            switch_cases.append(SwitchCase(None, list(default)))

        return Switch(subject, switch_cases)

    def switch_from_guards(self, stmts: list[Statement]) -> list[Statement]:
        '''Consecutive `if (d === K) { ...; return; }` guards'''
        out = []
        i = 0
        changed = False
        while i < len(stmts):
            run = []
            subject = None
            j = i
            while j < len(stmts):
                stmt = stmts[j]
                if not isinstance(stmt, If) or stmt.else_body is not None or not ends_with_jump(stmt.then_body):
                    break

                match = strict_equality(stmt.condition)
                if match is None or (subject is not None and match[0] != subject):
                    break

                if loop_jumps(stmt.then_body.statements, Break, labeled = False):
                    break

                subject = match[0]
                run.append(SwitchCase(match[1], list(stmt.then_body.statements)))
                j += 1

            if len(run) >= MIN_SWITCH_CASES:
                out.append(Switch(subject, run))
                changed = True
                i = j
            else:
                out.append(stmts[i])
                i += 1

        return out if changed else stmts


# ============================================================================
# Label pruning
# ============================================================================

class LabelPruner(IRTransformer):
    '''Drop labels nothing jumps to'''

    def __init__(self, used: set[str]):
        self.used = used

    def visit_label(self, node: Label) -> Label | None:
        return node if node.name in self.used else None


def used_labels(node: JSNode) -> set[str]:
    return {n.label for n in walk(node) if isinstance(n, (Goto, Break, Continue)) and n.label is not None}


def prune_labels(body: Block) -> Block:
    return LabelPruner(used_labels(body)).transform_block(body)


def refine(body: Block) -> Block:
    '''Apply the refinements until nothing changes'''
    refiner = StructureRefiner()
    for _ in range(MAX_REFINE_ROUNDS):
        result = refiner.transform_block(body)
        if result == body:
            return result
        body = result
    return body
