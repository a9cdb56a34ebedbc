'''
Control flow structuring: lifted blocks -> structured statement tree

Walks the blocks from the entry the way a reader follows the code:
- a loop header opens `while (true)`; reaching the header again inside it is
  `continue`, reaching the loop exit is `break`
- a two-way branch becomes `if`/`else`, both arms stopping at the immediate
  post-dominator, where the walk resumes
- a `catch` terminator opens `try`; the protected region ends where the
  catch marker is dropped, `gosub` there names the `finally` block
- a block reached a second time is a `goto` to its label

The tree is then refined (`refine`) into while/do/for/switch shapes. A
function that exceeds the step budget is emitted as a flat label/goto listing.
'''

from dataclasses import dataclass, field, replace

from ..common import *
from ..quickjs import AtomTable, BranchKind, raw_listing
from .js_ir import *
from .lifted import *
from .refine import prune_labels, refine
from .structural_analysis import StructuralAnalyzer

logger = logging.getLogger(__name__)


@dataclass(eq = False)
class LoopContext:
    header  : int
    exit    : int | None
    body    : set[int]
    label   : str | None = None     # set once a nested loop needs `break label`


@dataclass(frozen = True, eq = False)
class Context:
    stop        : int | None                = None
    loops       : tuple[LoopContext, ...]   = ()
    outer_stops : frozenset[int]            = field(default_factory = frozenset)

    @property
    def loop(self) -> LoopContext | None:
        return self.loops[-1] if self.loops else None

    def until(self, stop: int | None) -> 'Context':
        outer = self.outer_stops
        if self.stop is not None and self.stop != stop:
            outer = outer | {self.stop}
        return replace(self, stop = stop, outer_stops = outer)

    def enter_loop(self, loop: LoopContext) -> 'Context':
        outer = self.outer_stops | {self.stop} if self.stop is not None else self.outer_stops
        return Context(stop = None, loops = self.loops + (loop,), outer_stops = outer)


class Structurer:

    def __init__(self, fn: LiftedFunction, atoms: AtomTable | None = None, max_steps: int | None = None):
        self.fn = fn
        self.atoms = atoms
        self.blocks = fn.blocks
        self.index = {id(b): i for i, b in enumerate(self.blocks)}
        self.max_steps = max_steps if max_steps is not None else default_structure_max_steps()

        successors = {}
        flow = {}
        for i, b in enumerate(self.blocks):
            successors[i] = [self.index[id(s)] for _, s in b.edges]
            flow[i] = [self.index[id(s)] for k, s in b.edges if k != BranchKind.FINALLY]

        self.analysis = StructuralAnalyzer(len(self.blocks), successors, flow)

        self.steps = 0
        self.emitted: set[int] = set()
        self.warnings: list[DecompileWarning] = []

    def idx(self, block: LiftedBlock | None) -> int | None:
        return self.index[id(block)] if block is not None else None

    def tick(self):
        self.steps += 1
        if self.steps > self.max_steps:
            raise StructuringBudgetExceeded(f'more than {self.max_steps} structuring steps')

    def warn(self, block: int, reason: str):
        b = self.blocks[block]
        self.warnings.append(UnstructuredRegionWarning(b.offset, reason))
        logger.debug('%s: %s', b.name, reason)

    # ------------------------------------------------------------------ entry --
    def structure(self) -> Block:
        if not self.blocks:
            body = []

        else:
            try:
                body = self.structure_region(0, Context())

            except StructuringBudgetExceeded as e:
                self.warnings.append(UnstructuredRegionWarning(self.blocks[0].offset, str(e)))
                body = self.flat_listing()

        body.extend(self.unreachable_listing())

        tree = prune_labels(Block(body))
        return refine(tree)

    # ---------------------------------------------------------------- regions --
    def structure_region(self, start: int | None, ctx: Context, entering_loop: bool = False) -> list[Statement]:
        out = []
        cur = start
        while cur is not None:
            self.tick()

            if cur == ctx.stop:
                break

            if not entering_loop:
                jump = self.loop_jump(cur, ctx)
                if jump is not None:
                    out.append(jump)
                    break

                if cur in ctx.outer_stops or cur in self.emitted:
                    out.append(Goto(self.blocks[cur].name))
                    self.warn(cur, f'{self.blocks[cur].name} reached twice')
                    break

                if self.analysis.is_loop_header(cur) and (ctx.loop is None or ctx.loop.header != cur):
                    stmts, cur = self.structure_loop(cur, ctx)
                    out.extend(stmts)
                    continue

            entering_loop = False
            block = self.blocks[cur]
            self.emitted.add(cur)
            out.append(Label(block.name))
            out.extend(block.statements)
            cur = self.structure_terminator(cur, ctx, out)

        return out

    def structure_terminator(self, i: int, ctx: Context, out: list[Statement]) -> int | None:
        '''Emit what ends block `i`, return the block the walk continues at'''
        block = self.blocks[i]
        match block.terminator:
            case TerminatorKind.RETURN:
                out.append(Return(block.value))
                return None

            case TerminatorKind.THROW:
                out.append(Throw(block.value))
                return None

            case TerminatorKind.BRANCH:
                return self.structure_if(i, ctx, out)

            case TerminatorKind.CATCH:
                return self.structure_try(i, ctx, out)

            case TerminatorKind.GOSUB:
                # the finally body is emitted with its `try`
                return self.idx(block.succ(BranchKind.UNCONDITIONAL))

            case TerminatorKind.JUMP:
                return self.idx(block.edges[0][1]) if block.edges else None

            case _:
                return None

    def loop_jump(self, cur: int, ctx: Context) -> Statement | None:
        '''`continue`/`break` when `cur` is the header or exit of an enclosing loop'''
        for depth, loop in enumerate(reversed(ctx.loops)):
            if cur == loop.header:
                kind = Continue
            elif cur == loop.exit:
                kind = Break
            else:
                continue

            if depth == 0:
                return kind()

            if loop.label is None:
                loop.label = f'loop_{self.blocks[loop.header].offset}'
            return kind(loop.label)

        return None

    # ------------------------------------------------------------------ loops --
    def structure_loop(self, header: int, ctx: Context) -> tuple[list[Statement], int | None]:
        info = self.analysis.get_loop_info(header)
        loop = LoopContext(header, self.loop_exit(header, info.body, info.exits), info.body)
        logger.debug('loop at %s, exit %s', self.blocks[header].name,
                     self.blocks[loop.exit].name if loop.exit is not None else None)

        body = self.structure_region(header, ctx.enter_loop(loop), entering_loop = True)

        out = []
        if loop.label is not None:
            out.append(Label(loop.label))
        out.append(While(Literal.boolean(True), Block(body)))
        return out, loop.exit

    def loop_exit(self, header: int, body: set[int], exits: set[int]) -> int | None:
        '''The block following the loop

        Preference: the arm of a header test that leaves the loop, then the
        arm of a latch test, then the first exit laid out after the body.
        '''
        if not exits:
            return None

        candidates = [header] + [src for src, dst in sorted(self.analysis.back_edges) if dst == header]
        for i in candidates:
            block = self.blocks[i]
            if block.terminator != TerminatorKind.BRANCH:
                continue
            outside = [self.idx(s) for k, s in block.edges if self.idx(s) not in body]
            if len(outside) == 1:
                return outside[0]

        after = [e for e in sorted(exits) if e > max(body)]
        return after[0] if after else max(exits)

    # -------------------------------------------------------------- branches --
    def merge_point(self, i: int, ctx: Context) -> int | None:
        merge = self.analysis.find_merge_point(i)
        loop = ctx.loop
        if merge is not None and loop is not None and (merge not in loop.body or merge == loop.header):
            return None
        if merge is not None and merge in ctx.outer_stops:
            return None
        return merge

    def structure_branch(self, target: int | None, merge: int | None, ctx: Context) -> list[Statement]:
        if target is None or target == merge:
            return []
        return self.structure_region(target, ctx.until(merge) if merge is not None else ctx)

    def structure_if(self, i: int, ctx: Context, out: list[Statement]) -> int | None:
        block = self.blocks[i]
        cond = block.value
        t = self.idx(block.succ(BranchKind.TRUE))
        f = self.idx(block.succ(BranchKind.FALSE))

        if t == f:
            if not is_pure(cond):
                out.append(ExpressionStatement(cond))
            return t

        merge = self.merge_point(i, ctx)
        then_body = self.structure_branch(t, merge, ctx)
        else_body = self.structure_branch(f, merge, ctx)

        then_jumps = ends_with_jump(then_body)
        else_jumps = ends_with_jump(else_body)

        if not then_body and not else_body:
            if not is_pure(cond):
                out.append(ExpressionStatement(cond))

        elif not then_body:
            out.append(If(negate_condition(cond), Block(else_body)))

        elif not else_body:
            out.append(If(cond, Block(then_body)))

        # early exit: hoist the other arm out of the `else`
        elif then_jumps and (not else_jumps or len(then_body) <= len(else_body)):
            out.append(If(cond, Block(then_body)))
            out.extend(else_body)

        elif else_jumps:
            out.append(If(negate_condition(cond), Block(else_body)))
            out.extend(then_body)

        else:
            out.append(If(cond, Block(then_body), Block(else_body)))

        return merge

    # ------------------------------------------------------------ exceptions --
    def find_closers(self, start: int) -> list[int]:
        '''Blocks where the catch marker pushed before `start` is dropped

        Nested `catch` terminators push their own marker, so the depth of
        markers is tracked along the normal (non-exception) edges.
        '''
        closers = []
        seen = set()
        work = [(start, 0)]
        while work:
            i, level = work.pop()
            if i in seen:
                continue
            seen.add(i)

            block = self.blocks[i]
            level -= block.closes_catch
            if level < 0:
                closers.append(i)
                continue

            for kind, succ in block.edges:
                if kind in (BranchKind.EXCEPTION, BranchKind.FINALLY):
                    continue
                inner = level + 1 if block.terminator == TerminatorKind.CATCH else level
                work.append((self.idx(succ), inner))

        return sorted(closers)

    def after_gosub(self, i: int) -> tuple[int | None, int | None]:
        '''(finally block, continuation) of a block ending in `gosub`'''
        block = self.blocks[i]
        finally_block = self.idx(block.succ(BranchKind.FINALLY))
        after = block.succ(BranchKind.UNCONDITIONAL)
        if after is None or after.terminator in (TerminatorKind.RETURN, TerminatorKind.THROW):
            return finally_block, None

        if not after.statements and after.terminator == TerminatorKind.JUMP and after.edges:
            return finally_block, self.idx(after.edges[0][1])

        return finally_block, self.idx(after)

    def try_end(self, candidates: list[int], ctx: Context) -> int | None:
        if not candidates:
            return None

        loop = ctx.loop
        if loop is not None:
            inside = [c for c in candidates if c in loop.body]
            if inside:
                candidates = inside

        return max(candidates, key = lambda c: (candidates.count(c), -c))

    def is_rethrow(self, block: LiftedBlock | None) -> bool:
        return (block is not None and block.terminator == TerminatorKind.THROW
                and isinstance(block.value, ExceptionValue))

    def structure_try(self, i: int, ctx: Context, out: list[Statement]) -> int | None:
        block = self.blocks[i]
        body_start = self.idx(block.succ(BranchKind.UNCONDITIONAL))
        handler = block.succ(BranchKind.EXCEPTION)

        finally_block = None
        candidates = []
        for c in self.find_closers(body_start) if body_start is not None else []:
            closer = self.blocks[c]
            if closer.terminator == TerminatorKind.GOSUB:
                target, after = self.after_gosub(c)
                if finally_block is None:
                    finally_block = target
                if after is not None:
                    candidates.append(after)

            elif closer.terminator == TerminatorKind.JUMP and closer.edges:
                candidates.append(self.idx(closer.edges[0][1]))

        end = self.try_end(candidates, ctx)

        # a handler that only runs the finally block and rethrows is `try/finally`
        finally_only = False
        if handler is not None and not handler.statements:
            if handler.terminator == TerminatorKind.GOSUB \
                    and self.is_rethrow(handler.succ(BranchKind.UNCONDITIONAL)):
                finally_only = True
                finally_block = finally_block if finally_block is not None \
                    else self.idx(handler.succ(BranchKind.FINALLY))

            elif self.is_rethrow(handler):
                finally_only = True

        body = self.structure_region(body_start, ctx.until(end) if end is not None else ctx)

        param = None
        handler_body = None
        if not finally_only and handler is not None:
            stmts = self.structure_region(self.idx(handler), ctx.until(end) if end is not None else ctx)
            param, stmts = self.catch_param(stmts)
            handler_body = Block(stmts)

        finalizer = None
        if finally_block is not None:
            finalizer = Block(self.structure_finally(finally_block, ctx))
        elif finally_only:
            finalizer = Block()

        out.append(Try(Block(body), param, handler_body, finalizer))
        return end

    @staticmethod
    def catch_param(stmts: list[Statement]) -> tuple[Identifier | None, list[Statement]]:
        '''The first store of the caught exception is the catch binding'''
        for j, stmt in enumerate(stmts):
            if isinstance(stmt, Label):
                continue

            if isinstance(stmt, ExpressionStatement) and isinstance(stmt.expr, Assignment) \
                    and stmt.expr.op == '=' and isinstance(stmt.expr.target, Identifier) \
                    and isinstance(stmt.expr.value, ExceptionValue):
                return stmt.expr.target, stmts[:j] + stmts[j + 1:]
            break

        return None, stmts

    def structure_finally(self, start: int, ctx: Context) -> list[Statement]:
        '''The finally body is entered by every `gosub`: it may be emitted more than once'''
        saved = set(self.emitted)
        stmts = self.structure_region(start, Context(loops = ctx.loops))
        self.emitted = saved
        return stmts

    # ------------------------------------------------------------- fallbacks --
    def flat_listing(self) -> list[Statement]:
        '''Every block in layout order, each transfer an explicit goto'''
        out = []
        for block in self.blocks:
            out.append(Label(block.name))
            out.extend(block.statements)

            target = block.edges[0][1].name if block.edges else None
            match block.terminator:
                case TerminatorKind.JUMP if target is not None:
                    out.append(Goto(target))

                case TerminatorKind.BRANCH:
                    out.append(If(block.value, Block([Goto(block.succ(BranchKind.TRUE).name)])))
                    out.append(Goto(block.succ(BranchKind.FALSE).name))

                case TerminatorKind.RETURN:
                    out.append(Return(block.value))

                case TerminatorKind.THROW:
                    out.append(Throw(block.value))

                case TerminatorKind.CATCH:
                    out.append(Comment(f'try, exception handler at {block.succ(BranchKind.EXCEPTION).name}'))
                    out.append(Goto(block.succ(BranchKind.UNCONDITIONAL).name))

                case TerminatorKind.GOSUB:
                    out.append(Comment(f'finally block at {block.succ(BranchKind.FINALLY).name}'))
                    out.append(Goto(block.succ(BranchKind.UNCONDITIONAL).name))

                case TerminatorKind.RET:
                    out.append(Comment('end of finally block'))

        return out

    def unreachable_listing(self) -> list[Statement]:
        out = []
        for block in self.fn.unreachable:
            out.append(Comment(f'unreachable code at {block.name}:'))
            out.extend(Comment(line) for line in raw_listing(block.instructions, self.atoms))
        return out


def structure_function(fn: LiftedFunction, atoms: AtomTable | None = None,
                       max_steps: int | None = None) -> Block:
    '''Structured body of a lifted function; region warnings are added to `fn.warnings`'''
    structurer = Structurer(fn, atoms, max_steps)
    body = structurer.structure()
    fn.warnings.extend(structurer.warnings)
    return body
