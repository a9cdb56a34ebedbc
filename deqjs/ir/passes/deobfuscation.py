'''
Deobfuscation rules

Independent rewrites over the structured IR, each a no-op when its shape is
absent. `build_deobfuscation_pipeline` chains them to a fixed point.
'''

from ...common import *
from ..js_ir import *
from ..pipeline import FixedPointPipeline, FunctionPass, Pass
from ..program import FunctionIR, ProgramIR
from ..refine import loop_jumps
from ..visitor import IRTransformer, Substituter, substitute
from .folding import fold_constants, known_truthiness

logger = logging.getLogger(__name__)


def body_of(block: Block | None) -> list[Statement]:
    return block.statements if block is not None else []


def assigned_value(stmt: Statement) -> tuple[Identifier, Expression] | None:
    '''(target, value) of `x = value;` or `let x = value;`'''
    if isinstance(stmt, ExpressionStatement) and isinstance(stmt.expr, Assignment) \
            and stmt.expr.op == '=' and isinstance(stmt.expr.target, Identifier):
        return stmt.expr.target, stmt.expr.value

    if isinstance(stmt, VariableDeclaration) and stmt.init is not None:
        return stmt.name, stmt.init

    return None


def stores_to(node: JSNode, name: str) -> int:
    count = 0
    for n in walk(node):
        if isinstance(n, (Assignment, Update)) and isinstance(n.target, Identifier) and n.target.name == name:
            count += 1
        elif isinstance(n, VariableDeclaration) and n.name.name == name:
            count += 1
    return count


# ============================================================================
# 1. Opaque predicates
# ============================================================================

class OpaquePredicateRemover(IRTransformer):

    @staticmethod
    def truth(cond: Expression) -> bool | None:
        folded = fold_constants(cond)
        if not is_pure(folded):
            return None
        return known_truthiness(folded)

    def visit_if(self, node: If):
        node = self.generic_visit(node)
        truth = self.truth(node.condition)
        if truth is None:
            return node

        logger.debug('opaque predicate: if (%s)', 'true' if truth else 'false')
        return list(body_of(node.then_body if truth else node.else_body))

    def visit_while(self, node: While):
        node = self.generic_visit(node)
        if self.truth(node.condition) is False:
            return None
        return node

    def visit_for(self, node: For):
        node = self.generic_visit(node)
        if node.condition is not None and self.truth(node.condition) is False:
            return [node.init] if node.init is not None else None
        return node

    def visit_do_while(self, node: DoWhile):
        node = self.generic_visit(node)
        body = node.body.statements
        if self.truth(node.condition) is False and not loop_jumps(body, Break) and not loop_jumps(body, Continue):
            return list(body)
        return node

    def visit_conditional(self, node: Conditional):
        node = self.generic_visit(node)
        truth = self.truth(node.test)
        if truth is None:
            return node
        return node.consequent if truth else node.alternate


class OpaquePredicatePass(FunctionPass):
    '''`if (1 < 2) A else B` -> A, `while (false) ...` disappears'''

    def run_function(self, fn: FunctionIR, program: ProgramIR) -> Block:
        return OpaquePredicateRemover().transform_block(fn.body)


# ============================================================================
# 2. Junk code
# ============================================================================

class JunkRemover(IRTransformer):

    def __init__(self, used_labels: set[str]):
        self.used_labels = used_labels

    def visit_block(self, node: Block) -> Block:
        node = self.generic_visit(node)
        stmts = self.prune(node.statements)
        return node if stmts is node.statements else Block(stmts)

    def visit_switch_case(self, node: SwitchCase) -> SwitchCase:
        node = self.generic_visit(node)
        stmts = self.prune(node.body)
        return node if stmts is node.body else SwitchCase(node.test, stmts)

    def prune(self, stmts: list[Statement]) -> list[Statement]:
        out = []
        dead = False
        for stmt in stmts:
            if isinstance(stmt, Label) and stmt.name in self.used_labels:
                dead = False

            if dead and not isinstance(stmt, Comment):
                continue

            if isinstance(stmt, Block):
                if stmt.statements:
                    out.extend(stmt.statements)
                continue

            if isinstance(stmt, ExpressionStatement) and is_pure(stmt.expr):
                continue

            out.append(stmt)
            if isinstance(stmt, JUMP_STATEMENTS):
                dead = True

        return out if len(out) != len(stmts) or any(a is not b for a, b in zip(out, stmts)) else stmts

    def visit_if(self, node: If):
        node = self.generic_visit(node)
        if not node.then_body.statements and not body_of(node.else_body):
            return None if is_pure(node.condition) else ExpressionStatement(node.condition)
        return node


class JunkCodePass(FunctionPass):
    '''Unreachable statements after a jump, empty blocks and side-effect-free statements'''

    def run_function(self, fn: FunctionIR, program: ProgramIR) -> Block:
        used = {n.label for n in walk(fn.body) if isinstance(n, Goto)}
        return JunkRemover(used).transform_block(fn.body)


# ============================================================================
# 3. String array indirection
# ============================================================================

class StringArrayPass(Pass):
    '''`_0xabc[3]` -> the 4th string of a module-level array of string literals never written to'''

    def run(self, program: ProgramIR) -> ProgramIR:
        entry = program.entry
        if entry is None or entry.fallback:
            return program

        for name, strings in self.candidates(entry).items():
            if not self.only_indexed(program, name):
                continue

            logger.debug('string array %s with %d entries', name, len(strings))
            for fn in program.structured():
                if fn is program.entry or not self.shadows(fn, name):
                    fn.body = self.replace(fn.body, name, strings)

        return program

    @staticmethod
    def candidates(entry: FunctionIR) -> dict[str, list[str]]:
        found = {}
        for stmt in entry.body.statements:
            pair = assigned_value(stmt)
            if pair is None or not isinstance(pair[1], ArrayLiteral):
                continue

            elements = pair[1].elements
            if elements and all(isinstance(e, Literal) and e.kind == LiteralKind.STRING for e in elements):
                found[pair[0].name] = [e.value for e in elements]

        return found

    @staticmethod
    def shadows(fn: FunctionIR, name: str) -> bool:
        '''A parameter or local with the same name'''
        if fn.scope is None:
            return False
        return any(b.name == name and b.kind in (BindingKind.ARG, BindingKind.LOC) for b in fn.scope)

    def only_indexed(self, program: ProgramIR, name: str) -> bool:
        '''Every use outside the definition is `name[<integer>]`'''
        definitions = 0
        for fn in program.structured():
            if fn is not program.entry and self.shadows(fn, name):
                continue

            for n in walk(fn.body):
                if isinstance(n, (Assignment, Update)) and isinstance(n.target, MemberAccess) \
                        and isinstance(n.target.obj, Identifier) and n.target.obj.name == name:
                    return False

            definitions += stores_to(fn.body, name)
            if not self.uses_are_indexed(fn.body, name):
                return False

        return definitions == 1

    def uses_are_indexed(self, body: Block, name: str) -> bool:
        '''Reads of `name` in `body` all sit under an integer index'''
        stack = [body]
        while stack:
            node = stack.pop()
            match node:
                case MemberAccess(obj = Identifier(name = obj_name)) if obj_name == name:
                    if not node.computed or self.index_of(node.prop) is None:
                        return False
                    children = [node.prop]

                case Identifier():
                    if node.name == name:
                        return False
                    children = []

                case Assignment(target = Identifier(name = target_name)) | Update(target = Identifier(name = target_name)) \
                        if target_name == name:
                    children = [node.value] if isinstance(node, Assignment) else []

                case VariableDeclaration():
                    children = [node.init] if node.init is not None else []

                case _:
                    children = node.children()

            stack.extend(children)

        return True

    @staticmethod
    def index_of(prop: Expression) -> int | None:
        if isinstance(prop, Literal) and prop.kind == LiteralKind.NUMBER and float(prop.value).is_integer():
            return int(prop.value)
        return None

    def replace(self, body: Block, name: str, strings: list[str]) -> Block:
        def lookup(node: JSNode) -> JSNode | None:
            if isinstance(node, MemberAccess) and node.computed and isinstance(node.obj, Identifier) \
                    and node.obj.name == name:
                k = self.index_of(node.prop)
                if k is not None and 0 <= k < len(strings):
                    return Literal.string(strings[k])
            return None

        return Substituter(lookup).transform_block(body)


# ============================================================================
# 4. Control flow flattening
# ============================================================================

class FlatteningReverser(IRTransformer):
    '''
    state = C0;
    while (cond) { switch (state) { case C0: A; state = C1; break; ... } }

    is replaced by the case bodies in dispatch order when every case names
    its successor with a constant and none of them reads the state.
    '''

    MAX_STEPS = 1024

    def visit_block(self, node: Block) -> Block:
        node = self.generic_visit(node)
        stmts = self.flatten(node.statements)
        return node if stmts is node.statements else Block(stmts)

    def flatten(self, stmts: list[Statement]) -> list[Statement]:
        for i in range(1, len(stmts)):
            linear = self.linearize(stmts[i - 1], stmts[i], stmts[i + 1:])
            if linear is not None:
                return stmts[:i - 1] + linear + stmts[i + 1:]
        return stmts

    @staticmethod
    def case_key(test: Expression | None):
        if isinstance(test, Literal) and test.kind in (LiteralKind.NUMBER, LiteralKind.STRING):
            return (test.kind, test.value)
        return None

    def linearize(self, init: Statement, loop: Statement, rest: list[Statement]) -> list[Statement] | None:
        pair = assigned_value(init)
        if pair is None or not isinstance(loop, (While, For)):
            return None

        if isinstance(loop, For) and (loop.init is not None or loop.update is not None):
            return None

        state, start = pair
        body = loop.body.statements
        if len(body) != 1 or not isinstance(body[0], Switch) or body[0].discriminant != state:
            return None

        cases = {}
        for case in body[0].cases:
            key = self.case_key(case.test)
            if key is None:
                return None
            cases[key] = case.body

        current = self.case_key(fold_constants(start))
        out = []
        seen = set()
        while current is not None:
            if len(seen) > self.MAX_STEPS or current in seen:
                return None

            match self.loop_continues(loop.condition, state, current):
                case None:
                    return None
                case False:
                    break

            # no matching case with the loop still running spins forever
            if current not in cases:
                return None

            seen.add(current)
            step = self.split_case(cases[current], state)
            if step is None:
                return None

            stmts, current = step
            out.extend(stmts)

        if current is not None and any(n == state for s in rest for n in walk(s)):
            out.append(ExpressionStatement(Assignment(state, Literal(current[0], current[1]))))

        logger.debug('flattened dispatcher over %s: %d cases', state.name, len(seen))
        return out

    @staticmethod
    def loop_continues(cond: Expression | None, state: Identifier, current) -> bool | None:
        if cond is None:
            return True

        value = Literal(current[0], current[1])
        folded = fold_constants(Substituter(lambda n: value if n == state else None).visit(cond))
        if not is_pure(folded):
            return None
        return known_truthiness(folded)

    def split_case(self, body: list[Statement], state: Identifier) -> tuple[list[Statement], object] | None:
        '''(statements, next state) of one case body, no next state when it returns or throws'''
        stmts = list(body)
        if stmts and isinstance(stmts[-1], (Break, Continue)) and stmts[-1].label is None:
            stmts.pop()

        if loop_jumps(stmts, Break) or loop_jumps(stmts, Continue):
            return None

        if stmts and isinstance(stmts[-1], (Return, Throw)):
            if any(n == state for s in stmts for n in walk(s)):
                return None
            return stmts, None

        if not stmts:
            return None

        pair = assigned_value(stmts[-1])
        if pair is None or pair[0] != state:
            return None

        next_state = self.case_key(fold_constants(pair[1]))
        if next_state is None:
            return None

        stmts.pop()
        if any(n == state for s in stmts for n in walk(s)):
            return None

        return stmts, next_state


class FlatteningPass(FunctionPass):

    def run_function(self, fn: FunctionIR, program: ProgramIR) -> Block:
        return FlatteningReverser().transform_block(fn.body)


# ============================================================================
# 5. Proxy function wrappers
# ============================================================================

class ProxyInliningPass(Pass):
    '''`f(a, b)` where f is `function (x, y) { return x + y; }` -> `a + b`'''

    def run(self, program: ProgramIR) -> ProgramIR:
        proxies = {}
        for fn in program.structured():
            template = self.template(fn)
            if template is not None:
                proxies[fn.index] = template

        if not proxies:
            return program

        for fn in program.structured():
            holders = self.holders(fn, proxies)
            if holders:
                fn.body = Substituter(lambda node: self.inline(node, holders, proxies)).transform_block(fn.body)

        return program

    @staticmethod
    def template(fn: FunctionIR) -> tuple[int, Expression] | None:
        '''(parameter count, returned expression) of a proxy function'''
        body = [s for s in fn.body.statements if not isinstance(s, Comment)]
        if len(body) != 1 or not isinstance(body[0], Return) or body[0].value is None:
            return None

        expr = body[0].value
        if not isinstance(expr, (BinaryOp, Call)):
            return None

        for n in walk(expr):
            if isinstance(n, Identifier) and n.slot is not None and n.slot.kind != BindingKind.ARG:
                return None
            if isinstance(n, (Assignment, Update, FunctionRef)) or isinstance(n, Identifier) and n.name in ('this', 'arguments'):
                return None

        return fn.function.arg_count, expr

    @staticmethod
    def holders(fn: FunctionIR, proxies: dict) -> dict[tuple, int]:
        '''Bindings assigned exactly once with a proxy (or an object of proxies)'''
        out = {}
        for n in walk(fn.body):
            pair = assigned_value(n) if isinstance(n, Statement) else None
            if pair is None:
                continue

            target, value = pair
            if stores_to(fn.body, target.name) != 1 or ProxyInliningPass.member_stores(fn.body, target.name):
                continue

            if isinstance(value, FunctionRef) and value.index in proxies:
                out[(target.name, None)] = value.index

            elif isinstance(value, ObjectLiteral):
                for prop in value.properties:
                    if prop.kind == PropertyKind.INIT and isinstance(prop.key, Literal) \
                            and isinstance(prop.value, FunctionRef) and prop.value.index in proxies:
                        out[(target.name, prop.key.value)] = prop.value.index

        return out

    @staticmethod
    def member_stores(body: Block, name: str) -> bool:
        return any(isinstance(n, (Assignment, Update)) and isinstance(n.target, MemberAccess)
                   and isinstance(n.target.obj, Identifier) and n.target.obj.name == name for n in walk(body))

    @staticmethod
    def callee_key(callee: Expression) -> tuple | None:
        if isinstance(callee, Identifier):
            return callee.name, None

        if isinstance(callee, MemberAccess) and isinstance(callee.obj, Identifier) and isinstance(callee.prop, Literal):
            return callee.obj.name, callee.prop.value

        return None

    def inline(self, node: JSNode, holders: dict, proxies: dict) -> JSNode | None:
        if not isinstance(node, Call):
            return None

        key = self.callee_key(node.callee)
        if key is None or key not in holders:
            return None

        argc, template = proxies[holders[key]]
        args = list(node.args) + [Literal.undefined()] * (argc - len(node.args))
        if len(args) != argc or any(isinstance(a, UnaryOp) and a.op == '...' for a in args):
            return None

        # impure arguments must each be used once, in the order they were passed
        uses = [n.slot.index for n in walk(template) if isinstance(n, Identifier) and n.slot is not None]
        impure = [i for i, a in enumerate(args) if not is_pure(a)]
        if [u for u in uses if u in impure] != impure:
            return None

        logger.debug('inlined proxy call %s', key)
        return substitute(template, lambda n: args[n.slot.index] if isinstance(n, Identifier) and n.slot is not None
                          and n.slot.index < len(args) else None)


# ============================================================================
# 6. Closure naming
# ============================================================================

class ClosureNamingPass(Pass):
    '''Anonymous functions become `closure_<index>`'''

    def run(self, program: ProgramIR) -> ProgramIR:
        names = {}
        for fn in program.functions:
            if fn.is_anonymous and fn.index != 0:
                fn.name = f'closure_{fn.index}'
            names[fn.index] = fn.name

        def lookup(node: JSNode) -> JSNode | None:
            if isinstance(node, FunctionRef) and not node.name and names.get(node.index):
                return FunctionRef(node.index, names[node.index])
            return None

        for fn in program.structured():
            fn.body = Substituter(lookup).transform_block(fn.body)

        return program


DEOBFUSCATION_PASSES = (
    OpaquePredicatePass,
    JunkCodePass,
    StringArrayPass,
    FlatteningPass,
    ProxyInliningPass,
    ClosureNamingPass,
)


def build_deobfuscation_pipeline(max_iterations: int | None = None) -> FixedPointPipeline:
    if max_iterations is None:
        max_iterations = default_deobfuscate_max_iterations()
    return FixedPointPipeline([cls() for cls in DEOBFUSCATION_PASSES], max_iterations, ProgramIR.snapshot)
