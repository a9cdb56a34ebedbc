'''
Cross-block stack reconciliation

Runs on the blocks the lifter produced. First the join shapes the compiler
emits for `a && b`, `a || b`, `a ?? b` and `c ? x : y` are folded back into
expressions, merging straight-line successors as they become single-entry,
until nothing changes. Then every remaining `EntryValue` is bound: to the
value all predecessors agree on, or to a synthesized `$sN` temporary that
each predecessor assigns before the jump. A value the block may change
before reading it (a store to what it reads, or a call when it reads
memory) is bound through a temporary as well.
'''

from ..common import *
from ..quickjs import BranchKind
from .js_ir import *
from .lifted import *
from .visitor import Substituter

logger = logging.getLogger(__name__)


class StackReconciler:

    def __init__(self, fn: LiftedFunction, consumed: set[int] | None = None):
        self.fn = fn
        self.scope = fn.scope
        self.consumed = consumed if consumed is not None else set()
        self.folded: set[int] = set()

        self.owner: dict[int, LiftedBlock] = {}
        self.resolved: dict[int, Expression] = {}
        self.active: set[int] = set()
        self.final: dict[int, Expression] = {}
        self.visiting: set[int] = set()
        self.assignments: list[tuple[LiftedBlock, Identifier, Expression]] = []

        self.liveness: dict[int, bool] = {}
        self.exposures: dict[int, Clobber] = {}
        self.early: dict[tuple, Identifier] = {}

    def run(self):
        self.fold()
        self.bind()

    # ---------------------------------------------------------------- folding --
    def fold(self):
        changed = True
        while changed:
            changed = False
            for block in self.fn.blocks:
                if not block.alive:
                    continue

                if block.terminator == TerminatorKind.BRANCH:
                    if self.fold_short_circuit(block) or self.fold_conditional(block):
                        changed = True

                elif self.merge(block):
                    changed = True

            self.fn.blocks = [b for b in self.fn.blocks if b.alive]

    def is_simple_arm(self, arm: LiftedBlock | None, head: LiftedBlock) -> bool:
        '''A statement-free block entered only from `head`, jumping on'''
        if arm is None or arm is head or not arm.alive or arm is self.fn.entry:
            return False

        if arm.preds != [head] or sum(1 for _, b in head.edges if b is arm) != 1:
            return False

        return (not arm.statements and arm.terminator == TerminatorKind.JUMP and arm.closes_catch == 0
                and not arm.edge_stacks and len(arm.edges) == 1 and arm.edges[0][0] == BranchKind.UNCONDITIONAL)

    @staticmethod
    def substituter(block: LiftedBlock, stack: list[Expression]) -> Substituter:
        '''Replaces the entry slots of `block` with the values of `stack`'''
        mapping = {id(e): stack[i] for i, e in enumerate(block.entry) if i < len(stack)}
        return Substituter(lambda node: mapping.get(id(node)))

    def rejoin(self, head: LiftedBlock, join: LiftedBlock, removed: list[LiftedBlock]):
        head.clear_edges()
        for block in removed:
            block.clear_edges()
            block.alive = False

        head.terminator = TerminatorKind.JUMP
        head.value = None
        head.edge_stacks = {}
        head.add_edge(BranchKind.UNCONDITIONAL, join)

    def fold_short_circuit(self, head: LiftedBlock) -> bool:
        '''
        `a; dup; if_false L; drop; b; L:` is `a && b` (if_true gives `||`,
        `dup; is_undefined_or_null; if_false L` gives `??`)
        '''
        if not head.stack or head.edge_stacks:
            return False

        top = head.stack[-1]
        cond = head.value
        t = head.succ(BranchKind.TRUE)
        f = head.succ(BranchKind.FALSE)
        if t is None or f is None or t is f:
            return False

        if cond is top:
            candidates = ((t, f, '&&'), (f, t, '||'))
        elif isinstance(cond, BinaryOp) and cond.op == '==' and cond.lhs is top and cond.rhs == Literal.null():
            candidates = ((t, f, '??'),)
        else:
            return False

        depth = len(head.stack)
        for arm, join, op in candidates:
            if not self.is_simple_arm(arm, head) or arm.edges[0][1] is not join or join is head:
                continue

            if len(arm.entry) != depth or len(arm.stack) != depth or len(arm.inherited_drops) != 1:
                continue

            if arm.inherited_drops[0][1] is not arm.entry[-1]:
                continue

            if any(arm.stack[i] is not arm.entry[i] for i in range(depth - 1)):
                continue

            rhs = self.substituter(arm, head.stack).visit(arm.stack[-1])
            value = BinaryOp(op, top, rhs)
            self.folded.add(id(value))
            head.stack = head.stack[:-1] + [value]
            self.rejoin(head, join, [arm])
            return True

        return False

    def fold_conditional(self, head: LiftedBlock) -> bool:
        '''Two statement-free arms each leaving one value: `c ? x : y`

        The arms may consume slots below their result (optional chaining
        drops or reads the tested value), never the ones they pass through.
        '''
        if head.edge_stacks:
            return False

        t = head.succ(BranchKind.TRUE)
        f = head.succ(BranchKind.FALSE)
        if t is f or not self.is_simple_arm(t, head) or not self.is_simple_arm(f, head):
            return False

        join = t.edges[0][1]
        if f.edges[0][1] is not join or join is head:
            return False

        depth = len(head.stack)
        out = len(t.stack)
        if out == 0 or len(f.stack) != out or out - 1 > depth:
            return False

        keep = out - 1
        for arm in (t, f):
            if len(arm.entry) != depth:
                return False

            if any(arm.stack[i] is not arm.entry[i] for i in range(keep)):
                return False

            if any(e.depth < keep for _, e in arm.inherited_drops):
                return False

        x = self.substituter(t, head.stack).visit(t.stack[-1])
        y = self.substituter(f, head.stack).visit(f.stack[-1])
        value = Conditional(head.value, x, y)
        self.folded.add(id(value))
        head.stack = head.stack[:keep] + [value]
        self.rejoin(head, join, [t, f])
        return True

    def merge(self, head: LiftedBlock) -> bool:
        '''Append a single-entry successor to the block jumping to it

        A block that already discards inherited values (or closes a catch
        region) keeps its successor separate, so those drops stay last.
        '''
        if head.terminator != TerminatorKind.JUMP or len(head.edges) != 1:
            return False

        if head.inherited_drops or head.closes_catch:
            return False

        kind, succ = head.edges[0]
        if kind != BranchKind.UNCONDITIONAL or succ is head or succ is self.fn.entry or succ.preds != [head]:
            return False

        if any(b is succ for _, b in succ.edges):
            return False

        self.spill_into(head, succ)
        sub = self.substituter(succ, head.stack)

        base = len(head.statements)
        starts = []
        statements = []
        drops = list(succ.inherited_drops)
        for i in range(len(succ.statements) + 1):
            starts.append(base + len(statements))
            while drops and drops[0][0] <= i:
                _, entry = drops.pop(0)
                self.drop_into(head, sub.visit(entry), len(head.statements) + len(statements), statements)

            if i < len(succ.statements):
                statements.append(sub.visit(succ.statements[i]))

        head.statements.extend(statements)
        for e, pos, clobber in succ.clobbers:
            if e.depth >= len(head.stack):
                continue
            for n in walk(head.stack[e.depth]):
                if isinstance(n, EntryValue):
                    head.clobbers.append((n, starts[pos], clobber))

        head.stack = [sub.visit(v) for v in succ.stack]
        head.value = sub.visit(succ.value) if succ.value is not None else None
        head.edge_stacks = {k: [sub.visit(v) for v in s] for k, s in succ.edge_stacks.items()}
        head.terminator = succ.terminator
        head.closes_catch += succ.closes_catch
        head.merged.extend(succ.merged)

        edges = list(succ.edges)
        head.clear_edges()
        succ.clear_edges()
        succ.alive = False
        for k, b in edges:
            head.add_edge(k, b)

        return True

    def drop_into(self, block: LiftedBlock, value: Expression, position: int, statements: list[Statement]):
        if isinstance(value, EntryValue):
            block.inherited_drops.append((position, value))

        elif isinstance(value, CatchMarker):
            block.closes_catch += 1

        elif isinstance(value, STACK_MARKERS) or id(value) in self.consumed:
            pass

        else:
            statements.append(ExpressionStatement(value))

    def spill_into(self, head: LiftedBlock, succ: LiftedBlock):
        '''Head values the successor's statements would change are evaluated before them'''
        spill = set()
        for e, pos, clobber in succ.clobbers:
            if e.depth >= len(head.stack):
                continue

            value = head.stack[e.depth]
            if isinstance(value, EntryValue) or id(value) in self.consumed or not spillable(value):
                continue

            if clobber.hits(value) and (self.read_in(succ, e, pos) or self.passed_on(succ, e)):
                spill.add(e.depth)

        temps = {}
        for depth in sorted(spill):
            value = head.stack[depth]
            if id(value) not in temps:
                temp = temps[id(value)] = self.scope.new_temp()
                head.statements.append(ExpressionStatement(Assignment(temp, value)))
                self.consumed.add(id(temp))

        if temps:
            head.stack = [temps.get(id(v), v) for v in head.stack]

    # ------------------------------------------------------- evaluation order --
    @staticmethod
    def exits(block: LiftedBlock):
        for kind, succ in block.edges:
            yield succ, block.exit_for(kind)

    def read_in(self, block: LiftedBlock, e: EntryValue, start: int) -> bool:
        '''`e` is read by a statement from `start` on, or as the block leaves'''
        if any(n is e for s in block.statements[start:] for n in walk(s)):
            return True

        if block.value is not None and any(n is e for n in walk(block.value)):
            return True

        return any(v is not e and any(n is e for n in walk(v)) for _, stack in self.exits(block) for v in stack)

    def passed_on(self, block: LiftedBlock, e: EntryValue) -> list[EntryValue]:
        '''Successor slots `e` is handed to unchanged'''
        out = []
        for succ, stack in self.exits(block):
            for i, v in enumerate(stack):
                if v is e and i < len(succ.entry):
                    out.append(succ.entry[i])
        return out

    def live(self, e: EntryValue) -> bool:
        '''The inherited value is read somewhere, not only dropped'''
        key = id(e)
        if key not in self.liveness:
            self.liveness[key] = False
            block = self.owner[key]
            self.liveness[key] = self.read_in(block, e, 0) or any(self.live(s) for s in self.passed_on(block, e))
        return self.liveness[key]

    def exposure(self, e: EntryValue) -> Clobber:
        '''What may change between the block's entry and the last read of `e`'''
        key = id(e)
        if key in self.exposures:
            return self.exposures[key]

        self.exposures[key] = Clobber()
        block = self.owner[key]
        onward = [s for s in self.passed_on(block, e) if self.live(s)]
        at_exit = bool(onward) or self.read_in(block, e, len(block.statements))

        result = Clobber()
        for entry, pos, clobber in block.clobbers:
            if entry is e and (at_exit or self.read_in(block, e, pos)):
                result = result | clobber
        for s in onward:
            result = result | self.exposure(s)

        self.exposures[key] = result
        return result

    def early_temp(self, incoming: list[tuple[LiftedBlock, Expression]]) -> Identifier:
        '''A temporary every predecessor assigns the value it leaves in the slot'''
        key = (id(incoming[0][1]),) + tuple(id(pred) for pred, _ in incoming)
        temp = self.early.get(key)
        if temp is None:
            temp = self.early[key] = self.scope.new_temp()
            for pred, value in incoming:
                self.assignments.append((pred, temp, value))
        return temp

    # ---------------------------------------------------------------- binding --
    def bind(self):
        for block in self.fn.blocks:
            for e in block.entry:
                self.owner[id(e)] = block

        for block in self.fn.blocks:
            for e in block.entry:
                self.resolve(e)

        sub = Substituter(self.lookup)
        pending: dict[int, list[Statement]] = {}
        seen = set()
        for pred, temp, value in self.assignments:
            key = (id(pred), temp.name)
            if key in seen:
                continue
            seen.add(key)
            pending.setdefault(id(pred), []).append(ExpressionStatement(Assignment(temp, value)))

        for block in self.fn.blocks:
            statements = []
            drops = list(block.inherited_drops)
            for i in range(len(block.statements) + 1):
                while drops and drops[0][0] <= i:
                    _, entry = drops.pop(0)
                    self.discard(block, entry, sub, statements)

                if i < len(block.statements):
                    statements.append(sub.visit(block.statements[i]))

            statements.extend(sub.visit(s) for s in pending.get(id(block), []))

            block.statements = statements
            block.stack = [sub.visit(v) for v in block.stack]
            block.value = sub.visit(block.value) if block.value is not None else None
            block.edge_stacks = {k: [sub.visit(v) for v in s] for k, s in block.edge_stacks.items()}
            block.inherited_drops = []
            block.entry = []

    def discard(self, block: LiftedBlock, entry: EntryValue, sub: Substituter, statements: list[Statement]):
        '''An inherited value dropped: only folded expressions survive as statements'''
        raw = self.resolved.get(id(entry))
        while isinstance(raw, EntryValue) and id(raw) in self.resolved:
            raw = self.resolved[id(raw)]

        if isinstance(raw, CatchMarker):
            block.closes_catch += 1

        elif raw is not None and id(raw) in self.folded:
            statements.append(ExpressionStatement(sub.visit(entry)))

    def resolve(self, e: EntryValue) -> Expression:
        key = id(e)
        if key in self.resolved:
            return self.resolved[key]

        if key in self.active:
            return e

        self.active.add(key)
        block = self.owner[key]

        incoming = []
        for pred, kind in block.in_edges():
            stack = pred.exit_for(kind)
            if e.depth >= len(stack):
                raise StackMismatchError(block.offset, [len(stack)], f'{pred.name} leaves too few values')

            value = stack[e.depth]
            if isinstance(value, EntryValue) and id(value) in self.owner:
                value = self.resolve(value)

            if value is e:
                continue
            incoming.append((pred, value))

        values = [v for _, v in incoming]
        if not values:
            result = Placeholder('stack_slot')

        elif all(v is values[0] or v == values[0] for v in values[1:]) \
                and not any(n is e for n in walk(values[0])):
            result = values[0]
            exposure = self.exposure(e)
            if exposure and spillable(result) and exposure.hits(result):
                result = self.early_temp(incoming)
                logger.debug('%s: stack slot %d read after a change, kept in %s', block.name, e.depth, result)

        elif any(isinstance(v, STACK_MARKERS) for v in values):
            # the slot under a finally return address: never read
            result = Placeholder('stack_slot')

        else:
            result = self.scope.new_temp()
            for pred, value in incoming:
                self.assignments.append((pred, result, value))
            logger.debug('%s: stack slot %d joined through %s', block.name, e.depth, result)

        self.active.discard(key)
        self.resolved[key] = result
        return result

    def lookup(self, node: JSNode) -> JSNode | None:
        if isinstance(node, EntryValue):
            return self.final_value(node)
        return None

    def final_value(self, e: EntryValue) -> Expression:
        key = id(e)
        if key in self.final:
            return self.final[key]

        if key in self.visiting:
            block = self.owner.get(key)
            raise StackMismatchError(block.offset if block else e.block, [], 'cyclic stack value')

        self.visiting.add(key)
        value = self.resolved.get(key)
        if value is None:
            result = Placeholder('stack_slot')
        else:
            result = Substituter(self.lookup).visit(value)
        self.visiting.discard(key)

        self.final[key] = result
        return result
