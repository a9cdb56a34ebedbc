'''
Declarations for the locals of a structured body

A local is declared where it is first assigned when that assignment comes
before every other use, in the innermost statement list holding all of its
uses (`let x = 1;`, `for (let i = 0; ...)`). Anything else is hoisted to a
bare `let x;` at the top of the function.
'''

from ..common import *
from .js_ir import *
from .scope import Scope

logger = logging.getLogger(__name__)


class DeclarationBuilder:

    def __init__(self, scope: Scope):
        self.scope = scope
        self.cache: dict[int, set[Slot]] = {}
        self.hoisted: list[Slot] = []
        self.stores: dict[Slot, int] = {}

    def run(self, body: Block) -> Block:
        params = {n.param.slot for n in walk(body) if isinstance(n, Try) and n.param is not None}
        for n in walk(body):
            if isinstance(n, (Assignment, Update)) and isinstance(n.target, Identifier) and n.target.slot is not None:
                self.stores[n.target.slot] = self.stores.get(n.target.slot, 0) + 1

        slots = self.slots(body) - params
        stmts = self.place(body.statements, slots)

        hoisted = []
        for slot in sorted(set(self.hoisted), key = lambda s: (s.kind, s.index)):
            binding = self.scope.bindings[slot]
            kind = self.kind(slot)
            # a const needs its initializer
            hoisted.append(VariableDeclaration('let' if kind == 'const' else kind, Identifier(binding.name, slot)))
            logger.debug('hoisted declaration of %s', binding.name)

        return Block(hoisted + stmts)

    # ---------------------------------------------------------------- queries --
    def slots(self, node: JSNode) -> set[Slot]:
        '''Declarable locals referenced anywhere under `node`'''
        key = id(node)
        if key not in self.cache:
            found = set()
            for n in walk(node):
                if isinstance(n, Identifier) and n.slot is not None and n.slot.kind in (BindingKind.LOC, BindingKind.TEMP):
                    binding = self.scope.bindings.get(n.slot)
                    if binding is not None and not binding.is_implicit:
                        found.add(n.slot)
            self.cache[key] = found
        return self.cache[key]

    def kind(self, slot: Slot) -> str:
        binding = self.scope.bindings[slot]
        if binding.is_const and self.stores.get(slot, 0) <= 1:
            return 'const'

        if binding.var_def is not None and not binding.is_lexical:
            return 'var'
        return 'let'

    @staticmethod
    def nested(stmt: Statement) -> list[JSNode]:
        '''Statement lists directly inside `stmt`'''
        if isinstance(stmt, Switch):
            return list(stmt.cases)
        if isinstance(stmt, Block):
            return [stmt]
        return [getattr(stmt, name) for name in stmt._fields if isinstance(getattr(stmt, name), Block)]

    def own_slots(self, stmt: Statement) -> set[Slot]:
        '''Locals `stmt` uses outside its nested statement lists'''
        if isinstance(stmt, Switch):
            parts = [stmt.discriminant] + [c.test for c in stmt.cases if c.test is not None]
        else:
            parts = [getattr(stmt, name) for name in stmt._fields
                     if isinstance(getattr(stmt, name), JSNode) and not isinstance(getattr(stmt, name), Block)]

        out = set()
        for part in parts:
            out |= self.slots(part)
        return out

    def initializer(self, stmt: Statement | None, slot: Slot) -> Assignment | None:
        '''`x = value` storing to `slot`, value not reading it'''
        if not isinstance(stmt, ExpressionStatement) or not isinstance(stmt.expr, Assignment):
            return None

        expr = stmt.expr
        if expr.op != '=' or not isinstance(expr.target, Identifier) or expr.target.slot != slot:
            return None

        return expr if slot not in self.slots(expr.value) else None

    # -------------------------------------------------------------- placement --
    def place(self, stmts: list[Statement], slots: set[Slot]) -> list[Statement]:
        if not slots:
            return stmts

        out = list(stmts)
        pushed: dict[int, set[Slot]] = {}
        for slot in sorted(slots, key = lambda s: (s.kind, s.index)):
            users = [j for j, stmt in enumerate(out) if slot in self.slots(stmt)]
            if not users:
                continue

            first = users[0]
            stmt = out[first]
            declared = self.declare(stmt, slot, len(users) == 1)
            if declared is not None:
                out[first] = declared
                continue

            if len(users) == 1 and self.has_home(stmt, slot):
                pushed.setdefault(first, set()).add(slot)
                continue

            self.hoisted.append(slot)

        for j, inner in pushed.items():
            out[j] = self.place_nested(out[j], inner)

        return out

    def declare(self, stmt: Statement, slot: Slot, sole_user: bool) -> Statement | None:
        init = self.initializer(stmt, slot)
        if init is not None:
            return VariableDeclaration(self.kind(slot), init.target, init.value)

        if isinstance(stmt, For) and sole_user:
            init = self.initializer(stmt.init, slot)
            if init is not None:
                return For(VariableDeclaration(self.kind(slot), init.target, init.value),
                           stmt.condition, stmt.update, stmt.body)

        return None

    def has_home(self, stmt: Statement, slot: Slot) -> bool:
        '''Exactly one nested list of `stmt` holds every use of `slot`'''
        if slot in self.own_slots(stmt):
            return False
        return sum(1 for body in self.nested(stmt) if slot in self.slots(body)) == 1

    def place_nested(self, stmt: Statement, slots: set[Slot]) -> Statement:
        if isinstance(stmt, Switch):
            cases = [SwitchCase(c.test, self.place(c.body, slots & self.slots(c))) for c in stmt.cases]
            return Switch(stmt.discriminant, cases)

        if isinstance(stmt, Block):
            return Block(self.place(stmt.statements, slots))

        changes = {}
        for name in stmt._fields:
            value = getattr(stmt, name)
            if isinstance(value, Block):
                inner = slots & self.slots(value)
                if inner:
                    changes[name] = Block(self.place(value.statements, inner))

        if not changes:
            # the statement was rewritten since its uses were counted
            self.hoisted.extend(slots)
            return stmt

        return stmt.replace(**changes)


def declare_locals(body: Block, scope: Scope) -> Block:
    return DeclarationBuilder(scope).run(body)
