'''Blocks produced by stack simulation, before structuring'''

from dataclasses import dataclass, field

from ..common import *
from ..quickjs import BasicBlock, BranchKind, FunctionInfo
from .js_ir import *
from .scope import Scope


# ============================================================================
# Stack markers
# ============================================================================

class EntryValue(Placeholder):
    '''Stack slot a block inherits from its predecessors'''

    _fields = ('name', 'block', 'depth')

    def __init__(self, block: int, depth: int):
        super().__init__(f'entry:{block}:{depth}')
        self.block = block
        self.depth = depth


class CatchMarker(Placeholder):
    '''Pushed by `catch`, dropped when the protected region ends'''

    _fields = ('name',)

    def __init__(self, handler: int):
        super().__init__('catch_marker')
        self.handler = handler


class ReturnAddress(Placeholder):
    '''Pushed on the finally edge of `gosub`, consumed by `ret`'''

    _fields = ('name',)

    def __init__(self):
        super().__init__('return_address')


class ExceptionValue(Placeholder):
    '''The caught exception on top of a handler's entry stack'''

    _fields = ('name',)

    def __init__(self):
        super().__init__('exception')


class ReferenceBase(Placeholder):
    '''Object half of a reference created by make_*_ref'''

    _fields = ('name', 'target')

    def __init__(self, target: Expression):
        super().__init__('ref')
        self.target = target


STACK_MARKERS = (CatchMarker, ReturnAddress, ExceptionValue)


# ============================================================================
# Evaluation order
# ============================================================================

# Names that never denote a global binding
CONTEXT_NAMES = ('this', 'arguments', 'super', 'new', 'import')

EFFECT_OPS = ('delete', 'await', 'yield', 'yield*')


def is_global_name(name: str) -> bool:
    return name not in CONTEXT_NAMES and not name.startswith('#')


def spillable(value: Expression) -> bool:
    '''A pending stack value that can be evaluated early into a temporary'''
    return not any(isinstance(n, Placeholder) and not isinstance(n, EntryValue) for n in walk(value))


@dataclass
class Clobber:
    '''
    Bindings and memory a statement may change. A stack value still waiting
    to be used must not read any of them: bytecode evaluated it before the
    statement ran.
    '''
    slots   : set[Slot]     = field(default_factory = set)
    names   : set[str]      = field(default_factory = set)
    memory  : bool          = False

    @classmethod
    def of(cls, node: JSNode) -> 'Clobber':
        clobber = cls()
        for n in walk(node):
            match n:
                case Assignment() | Update():
                    clobber.write(n.target)

                case VariableDeclaration():
                    clobber.write(n.name)

                case EntryValue() | ReferenceBase() | CatchMarker() | ReturnAddress() | ExceptionValue():
                    pass

                case Call() | New() | Placeholder():
                    clobber.memory = True

                case UnaryOp(op = op) if op in EFFECT_OPS:
                    clobber.memory = True

        return clobber

    def write(self, target: Expression):
        match target:
            case Identifier(slot = None):
                self.names.add(target.name)

            case Identifier():
                self.slots.add(target.slot)

            case _:
                self.memory = True

    def __bool__(self) -> bool:
        return bool(self.slots or self.names or self.memory)

    def __or__(self, other: 'Clobber') -> 'Clobber':
        return Clobber(self.slots | other.slots, self.names | other.names, self.memory or other.memory)

    def hits(self, value: Expression) -> bool:
        '''Evaluating `value` after the statement could give another result or reorder an effect'''
        for n in walk(value):
            match n:
                case Identifier(slot = None):
                    if n.name in self.names or (self.memory and is_global_name(n.name)):
                        return True

                case Identifier():
                    if n.slot in self.slots:
                        return True

                case MemberAccess():
                    if self.memory:
                        return True

                case Call() | New() | Assignment() | Update():
                    return True

                case UnaryOp(op = op) if op in EFFECT_OPS:
                    return True

        return False


# ============================================================================
# Lifted blocks
# ============================================================================

class TerminatorKind(IntEnum2):
    JUMP    = 0     # goto or fallthrough
    BRANCH  = 1     # `value` is the condition
    RETURN  = 2     # `value` is the returned expression or None
    THROW   = 3
    CATCH   = 4     # pushes a catch marker, EXCEPTION edge to the handler
    GOSUB   = 5     # FINALLY edge to the finally block
    RET     = 6     # end of a finally block
    END     = 7     # falls off the end of the bytecode


@dataclass(eq = False)
class LiftedBlock:
    '''One basic block after stack simulation'''
    block           : BasicBlock
    entry           : list[EntryValue]                          = field(default_factory = list)
    statements      : list[Statement]                           = field(default_factory = list)
    stack           : list[Expression]                          = field(default_factory = list)
    terminator      : TerminatorKind | None                     = None
    value           : Expression | None                         = None
    edges           : list[tuple[BranchKind, 'LiftedBlock']]    = field(default_factory = list)
    preds           : list['LiftedBlock']                       = field(default_factory = list)
    edge_stacks     : dict[BranchKind, list[Expression]]        = field(default_factory = dict)
    inherited_drops : list[tuple[int, EntryValue]]              = field(default_factory = list)
    clobbers        : list[tuple[EntryValue, int, Clobber]]     = field(default_factory = list)
    closes_catch    : int                                       = 0
    merged          : list[BasicBlock]                          = field(default_factory = list)
    alive           : bool                                      = True

    @property
    def offset(self) -> int:
        return self.block.start_offset

    @property
    def name(self) -> str:
        return self.block.name

    def succ(self, kind: BranchKind) -> 'LiftedBlock | None':
        for k, b in self.edges:
            if k == kind:
                return b
        return None

    @property
    def succs(self) -> list['LiftedBlock']:
        out = []
        for _, b in self.edges:
            if b not in out:
                out.append(b)
        return out

    def add_edge(self, kind: BranchKind, target: 'LiftedBlock'):
        self.edges.append((kind, target))
        if self not in target.preds:
            target.preds.append(self)

    def clear_edges(self):
        for _, target in self.edges:
            if self in target.preds:
                target.preds.remove(self)
        self.edges = []

    def in_edges(self) -> list[tuple['LiftedBlock', BranchKind]]:
        return [(p, k) for p in self.preds for k, b in p.edges if b is self]

    def exit_for(self, kind: BranchKind) -> list[Expression]:
        '''Stack handed to the successor on a `kind` edge'''
        if kind in self.edge_stacks:
            return self.edge_stacks[kind]

        if kind == BranchKind.EXCEPTION:
            return self.stack[:-1] + [ExceptionValue()]

        if kind == BranchKind.FINALLY:
            return self.stack + [ReturnAddress()]

        return self.stack

    def __str__(self) -> str:
        return f'LiftedBlock {self.name} ({self.terminator.name if self.terminator is not None else "?"})'


@dataclass
class LiftedFunction:
    function    : FunctionInfo
    scope       : Scope
    blocks      : list[LiftedBlock]
    unreachable : list[BasicBlock]          = field(default_factory = list)
    warnings    : list[DecompileWarning]    = field(default_factory = list)

    @property
    def entry(self) -> LiftedBlock | None:
        return self.blocks[0] if self.blocks else None

