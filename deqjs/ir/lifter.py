'''
Stack-to-expression lifter

Lifting runs in three steps. `compute_entry_depths` walks the CFG once and
fixes the stack depth at every block entry. `Lifter` then simulates the
evaluation stack of each block on its own, starting from symbolic
`EntryValue` slots, turning every instruction into expression trees and
statements. Finally `StackReconciler` (stack_join.py) folds the join shapes
`&&`, `||`, `??` and `?:` and binds what is left to the predecessors' values.
'''

import re
from dataclasses import dataclass, field

from ..common import *
from ..quickjs import *
from .js_ir import *
from .lifted import *
from .scope import Scope
from .stack_join import StackReconciler

logger = logging.getLogger(__name__)


# ============================================================================
# Stack depths
# ============================================================================

NPOP_FORMATS = (OpFormat.NPOP, OpFormat.NPOP_U16, OpFormat.NPOPX)

# Depth of the jump target of with_* relative to the fallthrough
WITH_TARGET_DELTA = {
    'with_get_var'          : 1,
    'with_put_var'          : -1,
    'with_delete_var'       : 1,
    'with_make_ref'         : 2,
    'with_get_ref'          : 2,
    'with_get_ref_undef'    : 2,
}


def stack_effect(inst: Instruction) -> tuple[int, int]:
    '''(pops, pushes) of one instruction; call-style opcodes add their argc'''
    info = inst.info
    n_pop = info.n_pop
    if info.fmt in NPOP_FORMATS:
        n_pop += inst.argc or 0
    return n_pop, info.n_push


def edge_delta(inst: Instruction | None, kind: BranchKind) -> int:
    if inst is None:
        return 0

    if kind == BranchKind.FINALLY:
        return 1

    if kind == BranchKind.TRUE:
        return WITH_TARGET_DELTA.get(inst.mnemonic, 0)

    return 0


def compute_entry_depths(cfg: ControlFlowGraph) -> dict[BasicBlock, int]:
    '''Entry stack depth of every reachable block

    Raises StackMismatchError on underflow or when two predecessors leave
    different depths for the same block.
    '''
    if cfg.entry is None:
        return {}

    depths = {cfg.entry: 0}
    worklist = [cfg.entry]

    while worklist:
        block = worklist.pop()
        depth = depths[block]

        for inst in block.instructions:
            n_pop, n_push = stack_effect(inst)
            if n_pop > depth:
                raise StackMismatchError(inst.offset, [depth], f'{inst.mnemonic} pops {n_pop} with {depth} on the stack')
            depth += n_push - n_pop

        for kind, succ in block.edges:
            succ_depth = depth + edge_delta(block.terminal, kind)
            if succ_depth < 0:
                raise StackMismatchError(succ.start_offset, [succ_depth], f'negative depth on edge from {block.name}')

            known = depths.get(succ)
            if known is None:
                depths[succ] = succ_depth
                worklist.append(succ)

            elif known != succ_depth:
                raise StackMismatchError(succ.start_offset, [known, succ_depth])

    return depths


# ============================================================================
# Opcode groups
# ============================================================================

BINARY_OPS = {
    'add'           : '+',
    'sub'           : '-',
    'mul'           : '*',
    'div'           : '/',
    'mod'           : '%',
    'pow'           : '**',
    'shl'           : '<<',
    'sar'           : '>>',
    'shr'           : '>>>',
    'and'           : '&',
    'or'            : '|',
    'xor'           : '^',
    'lt'            : '<',
    'lte'           : '<=',
    'gt'            : '>',
    'gte'           : '>=',
    'eq'            : '==',
    'neq'           : '!=',
    'strict_eq'     : '===',
    'strict_neq'    : '!==',
    'instanceof'    : 'instanceof',
    'in'            : 'in',
    'private_in'    : 'in',
}

UNARY_OPS = {
    'neg'           : '-',
    'plus'          : '+',
    'not'           : '~',
    'lnot'          : '!',
    'typeof'        : 'typeof',
    'await'         : 'await',
}

# Operators that fold into `x op= y`
COMPOUND_OPS = ('+', '-', '*', '/', '%', '**', '<<', '>>', '>>>', '&', '|', '^')

# index lists: pushed values in terms of the popped ones (bottom first)
STACK_PERMUTATIONS = {
    'nip'       : (2, (1,)),
    'nip1'      : (3, (1, 2)),
    'dup'       : (1, (0, 0)),
    'dup1'      : (2, (0, 0, 1)),
    'dup2'      : (2, (0, 1, 0, 1)),
    'dup3'      : (3, (0, 1, 2, 0, 1, 2)),
    'insert2'   : (2, (1, 0, 1)),
    'insert3'   : (3, (2, 0, 1, 2)),
    'insert4'   : (4, (3, 0, 1, 2, 3)),
    'perm3'     : (3, (1, 0, 2)),
    'perm4'     : (4, (2, 0, 1, 3)),
    'perm5'     : (5, (3, 0, 1, 2, 4)),
    'swap'      : (2, (1, 0)),
    'swap2'     : (4, (2, 3, 0, 1)),
    'rot3l'     : (3, (1, 2, 0)),
    'rot3r'     : (3, (2, 0, 1)),
    'rot4l'     : (4, (1, 2, 3, 0)),
    'rot5l'     : (5, (1, 2, 3, 4, 0)),
}

# Opcodes that leave the stack as it is
PASSTHROUGH_OPS = (
    'nop', 'check_ctor', 'initial_yield', 'close_loc', 'set_loc_uninitialized', 'check_define_var',
    'set_name', 'set_name_computed', 'set_home_object', 'to_object', 'to_propkey', 'to_propkey2',
    'check_brand', 'iterator_check_object', 'iterator_close_return', 'invalid',
)

THROW_ERRORS = {
    0: ('TypeError',        "'{}' is read-only"),
    1: ('SyntaxError',      "redeclaration of '{}'"),
    2: ('ReferenceError',   '{} is not initialized'),
    3: ('ReferenceError',   "unsupported reference to 'super'"),
    4: ('TypeError',        'iterator does not have a throw method'),
}

REGEXP_FLAGS = (
    (64,    'd'),
    (1,     'g'),
    (2,     'i'),
    (4,     'm'),
    (8,     's'),
    (16,    'u'),
    (256,   'v'),
    (32,    'y'),
)

_SLOT_OPCODE = re.compile(r'^(get|put|set)_(loc|arg|var_ref)(\d)$')
_SHORT_FORMS = {
    'push_const8'   : 'push_const',
    'fclosure8'     : 'fclosure',
    'if_false8'     : 'if_false',
    'if_true8'      : 'if_true',
    'goto8'         : 'goto',
    'goto16'        : 'goto',
    'call0'         : 'call',
    'call1'         : 'call',
    'call2'         : 'call',
    'call3'         : 'call',
    'push_i8'       : 'push_i32',
    'push_i16'      : 'push_i32',
    'push_minus1'   : 'push_i32',
}


def canonical_name(mnemonic: str) -> str:
    '''Long form of a short opcode (get_loc2 -> get_loc, push_5 -> push_i32)'''
    if mnemonic in _SHORT_FORMS:
        return _SHORT_FORMS[mnemonic]

    if mnemonic.startswith('push_') and mnemonic[5:].isdigit():
        return 'push_i32'

    m = _SLOT_OPCODE.match(mnemonic)
    if m is not None:
        return f'{m.group(1)}_{m.group(2)}'

    return mnemonic


def regexp_flags(bytecode: str) -> str:
    '''Flags of a compiled regexp: the first u16 of its bytecode'''
    if len(bytecode) < 2:
        return ''

    bits = ord(bytecode[0]) | (ord(bytecode[1]) << 8)
    return ''.join(ch for bit, ch in REGEXP_FLAGS if bits & bit)


@dataclass
class Increment:
    op      : str           # ++ or --
    old     : Expression
    prefix  : bool


# ============================================================================
# Lifter
# ============================================================================

class Lifter:
    '''Simulates the evaluation stack of every reachable block'''

    def __init__(self, module: Module, decoded: DecodedFunction, cfg: ControlFlowGraph, scope: Scope | None = None):
        self.module     = module
        self.decoded    = decoded
        self.func       = decoded.function
        self.cfg        = cfg
        self.scope      = scope or Scope.from_function(self.func)
        self.atoms      = module.atoms

        self.global_decls: dict[str, str] = {}
        self.consumed: set[int] = set()
        self.increments: dict[int, Increment] = {}

        self.current: LiftedBlock | None = None
        self.stack: list[Expression] = []

    # ----------------------------------------------------------------- public --
    def lift(self) -> LiftedFunction:
        depths = compute_entry_depths(self.cfg)

        lifted: dict[BasicBlock, LiftedBlock] = {}
        for block in self.cfg.reachable_blocks():
            lifted[block] = self.lift_block(block, depths[block])

        for block, lb in lifted.items():
            for kind, succ in block.edges:
                lb.add_edge(kind, lifted[succ])

        blocks = [lifted[b] for b in self.cfg.blocks if b in lifted]
        self._declare_remaining_globals(blocks)

        fn = LiftedFunction(self.func, self.scope, blocks, self.cfg.unreachable, self.decoded.warnings)
        StackReconciler(fn, self.consumed).run()
        return fn

    def lift_block(self, block: BasicBlock, depth: int) -> LiftedBlock:
        lb = LiftedBlock(block, merged = [block])
        lb.entry = [EntryValue(block.start_offset, i) for i in range(depth)]

        self.current = lb
        self.stack = list(lb.entry)
        self.increments = {}

        for inst in block.instructions:
            self.lift_instruction(inst)

        if lb.terminator is None:
            lb.terminator = TerminatorKind.JUMP if block.edges else TerminatorKind.END

        lb.stack = self.stack
        return lb

    # ------------------------------------------------------------ stack ops --
    def push(self, value: Expression):
        self.stack.append(value)

    def pop(self) -> Expression:
        if not self.stack:
            raise StackMismatchError(self.current.offset, [0], 'pop from an empty stack')
        return self.stack.pop()

    def pop_n(self, n: int) -> list[Expression]:
        '''Pop n values, returned bottom first'''
        if n == 0:
            return []

        if n > len(self.stack):
            raise StackMismatchError(self.current.offset, [len(self.stack)], f'pop of {n} values')

        values = self.stack[-n:]
        del self.stack[-n:]
        return values

    def peek(self, pos: int) -> Expression:
        if pos > len(self.stack):
            raise StackMismatchError(self.current.offset, [len(self.stack)], f'access to stack slot -{pos}')
        return self.stack[-pos]

    def emit(self, stmt: Statement):
        clobber = Clobber.of(stmt)
        exposed = self.spill(clobber) if clobber else []

        statements = self.current.statements
        statements.append(stmt)
        self.current.clobbers.extend((e, len(statements), c) for e, c in exposed)

    def spill(self, clobber: Clobber) -> list[tuple[EntryValue, Clobber]]:
        '''
        Evaluate the stack values a statement would change into temporaries
        ahead of it. Values are checked from the top down, so the effects of
        a spilled value also count for the ones pushed before it.

        Returns the inherited slots left pending, with what may change them.
        '''
        spilled = {}
        exposed = []
        for value in reversed(self.stack):
            key = id(value)
            if key in spilled or key in self.consumed or not spillable(value):
                continue

            if clobber.hits(value):
                spilled[key] = None
                clobber = clobber | Clobber.of(value)
            else:
                exposed.extend((n, clobber) for n in walk(value) if isinstance(n, EntryValue))

        for i, value in enumerate(self.stack):
            key = id(value)
            if key not in spilled:
                continue

            temp = spilled[key]
            if temp is None:
                temp = spilled[key] = self.scope.new_temp()
                self.current.statements.append(ExpressionStatement(Assignment(temp, value)))
                logger.debug('%s: stack value spilled to %s', self.current.name, temp)
            self.stack[i] = temp

        return exposed

    def terminate(self, kind: TerminatorKind, value: Expression | None = None):
        self.current.terminator = kind
        self.current.value = value

    def drop(self, value: Expression):
        '''Discard a value: one expression statement for each lifted value'''
        if isinstance(value, EntryValue):
            self.current.inherited_drops.append((len(self.current.statements), value))

        elif isinstance(value, CatchMarker):
            self.current.closes_catch += 1

        elif isinstance(value, STACK_MARKERS) or id(value) in self.consumed:
            pass

        else:
            self.emit(ExpressionStatement(value))

    # ------------------------------------------------------------ helpers --
    def atom(self, inst: Instruction) -> Atom:
        return self.atoms.resolve_or_raw(inst.atom)

    def atom_name(self, inst: Instruction) -> str:
        atom = self.atom(inst)
        return atom.name if atom.name is not None else str(atom)

    def global_ident(self, inst: Instruction) -> Identifier:
        name = self.atom_name(inst)
        return Identifier(name if is_identifier(name) else sanitize_ident(name))

    def prop_key(self, inst: Instruction) -> tuple[Expression, bool]:
        '''Property key of an atom operand and whether it must be computed'''
        atom = self.atom(inst)
        if atom.kind == AtomKind.TAGGED_INT:
            return Literal.number(atom.value), True

        name = atom.name if atom.name is not None else str(atom)
        return Literal.string(name), False

    def member(self, obj: Expression, inst: Instruction) -> MemberAccess:
        key, computed = self.prop_key(inst)
        if computed:
            return MemberAccess(obj, key, True)
        return MemberAccess.named(obj, key.value)

    @staticmethod
    def element(obj: Expression, prop: Expression) -> MemberAccess:
        '''obj[prop], or obj.prop for string keys that are identifiers'''
        if isinstance(prop, Literal) and prop.kind == LiteralKind.STRING and is_identifier(prop.value):
            return MemberAccess.named(obj, prop.value)
        return MemberAccess(obj, prop, True)

    def slot_ident(self, kind: str, index: int) -> Identifier:
        binding_kind = {'loc': BindingKind.LOC, 'arg': BindingKind.ARG, 'var_ref': BindingKind.VAR_REF}[kind]
        return self.scope.ident(binding_kind, index)

    def function_ref(self, index: int) -> FunctionRef:
        func = self.module.function(index)
        name = func.display_name()
        return FunctionRef(index, sanitize_ident(name) if name else '')

    def constant(self, index: int) -> Expression:
        if not 0 <= index < len(self.func.cpool):
            raise InvalidReferenceError('constant', index, len(self.func.cpool), None)
        return self.value_expr(self.func.cpool[index])

    def value_expr(self, value: Value) -> Expression:
        '''Expression for a constant pool entry'''
        match value.kind:
            case ValueKind.UNDEFINED:
                return Literal.undefined()

            case ValueKind.NULL:
                return Literal.null()

            case ValueKind.BOOL:
                return Literal.boolean(value.value)

            case ValueKind.INT32 | ValueKind.FLOAT64:
                return Literal.number(value.value)

            case ValueKind.STRING:
                return Literal.string(value.value)

            case ValueKind.BIG_INT:
                return Literal(LiteralKind.BIGINT, bigint_from_bytes(value.value))

            case ValueKind.FUNCTION:
                return self.function_ref(value.function)

            case ValueKind.REGEXP:
                flags = regexp_flags(value.inner.value) if value.inner is not None else ''
                return Literal(LiteralKind.REGEXP, value.value, flags)

            case ValueKind.ARRAY:
                return ArrayLiteral([self.value_expr(v) for v in value.items])

            case ValueKind.OBJECT:
                props = []
                for atom, v in value.props:
                    name = atom.name if atom.name is not None else str(atom)
                    props.append(Property(Literal.string(name), self.value_expr(v)))
                return ObjectLiteral(props)

            case _:
                return Placeholder(str(value).strip('<>'))

    # --------------------------------------------------------- assignments --
    def assignment(self, target: Expression, value: Expression) -> Expression:
        inc = self.increments.get(id(value))
        if inc is not None and inc.old == target:
            return Update(inc.op, target, inc.prefix)

        if isinstance(value, BinaryOp) and value.op in COMPOUND_OPS and value.lhs == target:
            return Assignment(target, value.rhs, f'{value.op}=')

        return Assignment(target, value)

    def store(self, target: Expression, value: Expression, keep: bool = False):
        '''
        Assign `value` to `target`. A value still on the stack (dup before the
        store) is replaced by the assignment so it is evaluated once.
        '''
        result = self.assignment(target, value)
        if keep:
            self.push(result)
            return

        top = self.stack[-1] if self.stack else None
        inc = self.increments.get(id(value))

        if isinstance(result, Update) and inc is not None and top is not None:
            if (inc.prefix and top is value) or (not inc.prefix and top is inc.old):
                self.stack[-1] = result
                return

        elif top is value and top is not None:
            self.stack[-1] = result
            return

        self.emit(ExpressionStatement(result))

    def increment(self, value: Expression, op: str, prefix: bool) -> Expression:
        result = BinaryOp('+' if op == '++' else '-', value, Literal.number(1))
        self.increments[id(result)] = Increment(op, value, prefix)
        if id(value) in self.consumed:
            self.consumed.add(id(result))
        return result

    # ------------------------------------------------------------- objects --
    def define_property(self, obj: Expression, prop: Property):
        '''Add a member to an object literal, or emit it as a statement'''
        if isinstance(obj, ObjectLiteral):
            self.push(ObjectLiteral(obj.properties + [prop]))
            return

        match prop.kind:
            case PropertyKind.GETTER | PropertyKind.SETTER:
                accessor = 'get' if prop.kind == PropertyKind.GETTER else 'set'
                descriptor = ObjectLiteral([Property(Literal.string(accessor), prop.value)])
                self.emit(ExpressionStatement(Call(
                    MemberAccess.named(Identifier('Object'), 'defineProperty'), [obj, prop.key, descriptor])))

            case PropertyKind.PROTO:
                self.emit(ExpressionStatement(Call(
                    MemberAccess.named(Identifier('Object'), 'setPrototypeOf'), [obj, prop.value])))

            case _:
                target = self.element(obj, prop.key) if not prop.computed else MemberAccess(obj, prop.key, True)
                self.emit(ExpressionStatement(Assignment(target, prop.value)))

        self.push(obj)
        self.consumed.add(id(obj))

    def method_call(self, func: Expression, this: Expression, args: list[Expression]) -> Expression:
        if isinstance(func, MemberAccess) and (func.obj is this or func.obj == this):
            return Call(func, args)

        if isinstance(this, Literal) and this.kind == LiteralKind.UNDEFINED:
            return Call(func, args)

        return Call(MemberAccess.named(func, 'call'), [this] + args)

    @staticmethod
    def spread_args(array: Expression) -> list[Expression]:
        if isinstance(array, ArrayLiteral):
            return list(array.elements)
        return [UnaryOp('...', array)]

    def ref_target(self, obj: Expression, prop: Expression) -> Expression:
        if isinstance(obj, ReferenceBase):
            return obj.target
        return self.element(obj, prop)

    # ---------------------------------------------------------- instruction --
    def lift_instruction(self, inst: Instruction):
        if inst.is_unknown:
            self.emit(Comment(f'unknown opcode 0x{inst.opcode:02x} at {inst.offset}'))
            return

        mnemonic = inst.mnemonic
        name = canonical_name(mnemonic)

        if name in BINARY_OPS:
            rhs = self.pop()
            lhs = self.pop()
            self.push(BinaryOp(BINARY_OPS[name], lhs, rhs))
            return

        if name in UNARY_OPS:
            self.push(UnaryOp(UNARY_OPS[name], self.pop()))
            return

        if name in STACK_PERMUTATIONS:
            count, order = STACK_PERMUTATIONS[name]
            values = self.pop_n(count)
            for i in set(range(count)) - set(order):
                self.drop(values[i])
            for i in order:
                self.push(values[i])
            return

        if name in PASSTHROUGH_OPS:
            return

        match name:
            # constants
            case 'push_i32':
                self.push(Literal.number(inst.imm))

            case 'push_const':
                self.push(self.constant(inst.const_index))

            case 'fclosure':
                value = self.constant(inst.const_index)
                self.push(value)

            case 'push_atom_value':
                self.push(Literal.string(self.atom_name(inst)))

            case 'private_symbol':
                self.push(Identifier(self.atom_name(inst)))

            case 'push_empty_string':
                self.push(Literal.string(''))

            case 'undefined':
                self.push(Literal.undefined())

            case 'null':
                self.push(Literal.null())

            case 'push_false' | 'push_true':
                self.push(Literal.boolean(name == 'push_true'))

            case 'push_this':
                self.push(Identifier('this'))

            case 'object':
                self.push(ObjectLiteral())

            case 'special_object':
                self.push(self.special_object(inst.imm))

            case 'rest':
                slice_call = MemberAccess.named(MemberAccess.named(ArrayLiteral(), 'slice'), 'call')
                self.push(Call(slice_call, [Identifier('arguments'), Literal.number(inst.imm)]))

            case 'drop':
                self.drop(self.pop())

            case 'nip_catch':
                value = self.pop()
                self.drop(self.pop())
                self.push(value)

            # variables
            case 'get_loc' | 'get_arg' | 'get_var_ref' | 'get_loc_check' | 'get_var_ref_check':
                kind = name.split('_', 1)[1].removesuffix('_check')
                self.push(self.slot_ident(kind, inst.var_index))

            case 'get_loc0_loc1':
                self.push(self.slot_ident('loc', 0))
                self.push(self.slot_ident('loc', 1))

            case 'put_loc' | 'put_arg' | 'put_var_ref' | 'put_loc_check' | 'put_loc_check_init' \
                    | 'put_var_ref_check' | 'put_var_ref_check_init':
                kind = name.split('_', 1)[1].removesuffix('_init').removesuffix('_check')
                self.store(self.slot_ident(kind, inst.var_index), self.pop())

            case 'set_loc' | 'set_arg' | 'set_var_ref':
                kind = name.split('_', 1)[1]
                self.store(self.slot_ident(kind, inst.var_index), self.pop(), keep = True)

            case 'inc_loc' | 'dec_loc':
                op = '++' if name == 'inc_loc' else '--'
                self.emit(ExpressionStatement(Update(op, self.slot_ident('loc', inst.var_index), False)))

            case 'add_loc':
                value = self.pop()
                self.emit(ExpressionStatement(Assignment(self.slot_ident('loc', inst.var_index), value, '+=')))

            # globals
            case 'get_var' | 'get_var_undef':
                self.push(self.global_ident(inst))

            case 'check_var':
                self.push(Placeholder('check_var', [Literal.string(self.atom_name(inst))]))

            case 'put_var':
                self.store(self.global_ident(inst), self.pop())

            case 'put_var_strict':
                value = self.pop()
                self.pop()
                self.store(self.global_ident(inst), value)

            case 'put_var_init':
                value = self.pop()
                ident = self.global_ident(inst)
                kind = self.global_decls.pop(ident.name, None)
                if kind is not None:
                    self.emit(VariableDeclaration(kind, ident, value))
                else:
                    self.store(ident, value)

            case 'define_var':
                flags = inst.imm
                if flags & 0x80:
                    kind = 'let' if flags & 0x02 else 'const'
                else:
                    kind = 'var'
                self.global_decls.setdefault(self.global_ident(inst).name, kind)

            case 'define_func':
                value = self.pop()
                ident = self.global_ident(inst)
                if not (isinstance(value, FunctionRef) and value.name == ident.name):
                    self.emit(VariableDeclaration('var', ident, value))

            case 'delete_var':
                self.push(UnaryOp('delete', self.global_ident(inst)))

            # references
            case 'make_loc_ref' | 'make_arg_ref' | 'make_var_ref_ref':
                kind = {'make_loc_ref': 'loc', 'make_arg_ref': 'arg', 'make_var_ref_ref': 'var_ref'}[name]
                self.push(ReferenceBase(self.slot_ident(kind, inst.imm)))
                self.push(Literal.string(self.atom_name(inst)))

            case 'make_var_ref':
                self.push(ReferenceBase(self.global_ident(inst)))
                self.push(Literal.string(self.atom_name(inst)))

            case 'get_ref_value':
                prop = self.pop()
                obj = self.pop()
                self.push(obj)
                self.push(prop)
                self.push(self.ref_target(obj, prop))

            case 'put_ref_value':
                value = self.pop()
                prop = self.pop()
                obj = self.pop()
                self.store(self.ref_target(obj, prop), value)

            # properties
            case 'get_field':
                self.push(self.member(self.pop(), inst))

            case 'get_field2':
                obj = self.pop()
                self.push(obj)
                self.push(self.member(obj, inst))

            case 'put_field':
                value = self.pop()
                obj = self.pop()
                self.store(self.member(obj, inst), value)

            case 'get_length':
                self.push(MemberAccess.named(self.pop(), 'length'))

            case 'get_array_el':
                prop = self.pop()
                obj = self.pop()
                self.push(self.element(obj, prop))

            case 'get_array_el2':
                prop = self.pop()
                obj = self.pop()
                self.push(obj)
                self.push(self.element(obj, prop))

            case 'put_array_el':
                value = self.pop()
                prop = self.pop()
                obj = self.pop()
                self.store(self.element(obj, prop), value)

            case 'get_private_field':
                private_name = self.pop()
                obj = self.pop()
                self.push(MemberAccess(obj, private_name))

            case 'put_private_field':
                private_name = self.pop()
                value = self.pop()
                obj = self.pop()
                self.store(MemberAccess(obj, private_name), value)

            case 'define_private_field':
                value = self.pop()
                private_name = self.pop()
                obj = self.pop()
                self.emit(ExpressionStatement(Assignment(MemberAccess(obj, private_name), value)))
                self.push(obj)
                self.consumed.add(id(obj))

            case 'get_super':
                self.pop()
                self.push(Identifier('super'))

            case 'get_super_value':
                prop = self.pop()
                self.pop_n(2)
                self.push(self.element(Identifier('super'), prop))

            case 'put_super_value':
                value = self.pop()
                prop = self.pop()
                self.pop_n(2)
                self.store(self.element(Identifier('super'), prop), value)

            case 'delete':
                prop = self.pop()
                obj = self.pop()
                self.push(UnaryOp('delete', self.element(obj, prop)))

            # object and array literals
            case 'define_field':
                value = self.pop()
                obj = self.pop()
                key, computed = self.prop_key(inst)
                self.define_property(obj, Property(key, value, PropertyKind.INIT, computed))

            case 'set_proto':
                proto = self.pop()
                obj = self.pop()
                self.define_property(obj, Property(None, proto, PropertyKind.PROTO))

            case 'define_method' | 'define_method_computed':
                func = self.pop()
                if name == 'define_method':
                    key, computed = self.prop_key(inst)
                else:
                    key, computed = self.pop(), True
                obj = self.pop()
                kind = (PropertyKind.METHOD, PropertyKind.GETTER, PropertyKind.SETTER)[min(inst.imm & 3, 2)]
                self.define_property(obj, Property(key, func, kind, computed))

            case 'define_array_el':
                value = self.pop()
                idx = self.pop()
                arr = self.pop()
                if isinstance(arr, ArrayLiteral):
                    arr = ArrayLiteral(arr.elements + [value])
                else:
                    self.emit(ExpressionStatement(Assignment(MemberAccess(arr, idx, True), value)))
                    self.consumed.add(id(arr))
                self.push(arr)
                self.push(idx)
                self.consumed.add(id(idx))

            case 'append':
                iterable = self.pop()
                idx = self.pop()
                arr = self.pop()
                if isinstance(arr, ArrayLiteral):
                    arr = ArrayLiteral(arr.elements + [UnaryOp('...', iterable)])
                else:
                    self.emit(ExpressionStatement(Call(MemberAccess.named(arr, 'push'), [UnaryOp('...', iterable)])))
                    self.consumed.add(id(arr))
                self.push(arr)
                self.push(idx)
                self.consumed.add(id(idx))

            case 'copy_data_properties':
                mask = inst.imm
                target_pos = 1 + (mask & 3)
                source_pos = 1 + ((mask >> 2) & 7)
                target = self.peek(target_pos)
                source = self.peek(source_pos)
                self.consumed.add(id(source))
                if isinstance(target, ObjectLiteral):
                    self.stack[-target_pos] = ObjectLiteral(target.properties + [Property(None, source, PropertyKind.SPREAD)])
                else:
                    self.consumed.add(id(target))
                    self.emit(ExpressionStatement(Call(MemberAccess.named(Identifier('Object'), 'assign'), [target, source])))

            case 'define_class' | 'define_class_computed':
                ctor = self.pop()
                parent = self.pop()
                if name == 'define_class_computed':
                    computed_name = self.pop()
                    self.push(computed_name)
                    self.consumed.add(id(computed_name))

                if not (isinstance(parent, Literal) and parent.kind == LiteralKind.UNDEFINED):
                    self.emit(ExpressionStatement(Call(
                        MemberAccess.named(Identifier('Object'), 'setPrototypeOf'), [ctor, parent])))

                proto = MemberAccess.named(ctor, 'prototype')
                self.push(ctor)
                self.push(proto)
                self.consumed.add(id(proto))

            # calls
            case 'call':
                args = self.pop_n(inst.argc)
                self.push(Call(self.pop(), args))

            case 'tail_call':
                args = self.pop_n(inst.argc)
                self.terminate(TerminatorKind.RETURN, Call(self.pop(), args))

            case 'call_method' | 'tail_call_method':
                args = self.pop_n(inst.argc)
                func = self.pop()
                this = self.pop()
                call = self.method_call(func, this, args)
                if name == 'tail_call_method':
                    self.terminate(TerminatorKind.RETURN, call)
                else:
                    self.push(call)

            case 'call_constructor':
                args = self.pop_n(inst.argc)
                self.pop()                      # new.target
                func = self.pop()
                if isinstance(func, Identifier) and func.name == 'super':
                    self.push(Call(func, args))
                else:
                    self.push(New(func, args))

            case 'array_from':
                self.push(ArrayLiteral(self.pop_n(inst.argc)))

            case 'apply':
                array = self.pop()
                this = self.pop()
                func = self.pop()
                args = self.spread_args(array)
                if inst.imm == 2:
                    if isinstance(func, Identifier) and func.name == 'super':
                        self.push(Call(func, args))
                    else:
                        self.push(New(func, args))

                elif (isinstance(this, Literal) and this.kind == LiteralKind.UNDEFINED) \
                        or (isinstance(func, MemberAccess) and (func.obj is this or func.obj == this)):
                    self.push(Call(func, args))

                else:
                    self.push(Call(MemberAccess.named(func, 'apply'), [this, array]))

            case 'eval':
                args = self.pop_n(inst.argc)
                self.push(Call(self.pop(), args))

            case 'apply_eval':
                array = self.pop()
                self.push(Call(self.pop(), self.spread_args(array)))

            case 'import':
                values = self.pop_n(inst.info.n_pop)
                args = [values[0]] + [v for v in values[1:] if not (isinstance(v, Literal) and v.kind == LiteralKind.UNDEFINED)]
                self.push(Call(Identifier('import'), args))

            case 'regexp':
                bytecode = self.pop()
                pattern = self.pop()
                if isinstance(pattern, Literal) and pattern.kind == LiteralKind.STRING \
                        and isinstance(bytecode, Literal) and bytecode.kind == LiteralKind.STRING:
                    self.push(Literal(LiteralKind.REGEXP, pattern.value, regexp_flags(bytecode.value)))
                else:
                    self.push(New(Identifier('RegExp'), [pattern]))

            # arithmetic not covered by the tables
            case 'inc' | 'dec':
                self.push(self.increment(self.pop(), '++' if name == 'inc' else '--', True))

            case 'post_inc' | 'post_dec':
                value = self.pop()
                self.push(value)
                self.push(self.increment(value, '++' if name == 'post_inc' else '--', False))

            case 'is_undefined_or_null':
                self.push(BinaryOp('==', self.pop(), Literal.null()))

            case 'is_undefined':
                self.push(BinaryOp('===', self.pop(), Literal.undefined()))

            case 'is_null':
                self.push(BinaryOp('===', self.pop(), Literal.null()))

            case 'typeof_is_undefined' | 'typeof_is_function':
                expected = 'undefined' if name == 'typeof_is_undefined' else 'function'
                self.push(BinaryOp('===', UnaryOp('typeof', self.pop()), Literal.string(expected)))

            # iterators and generators
            case 'for_in_start' | 'for_of_start' | 'for_await_of_start':
                obj = self.pop()
                self.push(Placeholder(name, [obj]))
                if name != 'for_in_start':
                    self.push(Placeholder(f'{name}_next'))
                    self.push(Placeholder(f'{name}_catch'))

            case 'for_in_next':
                enum = self.peek(1)
                self.push(Placeholder('for_in_value', [enum]))
                self.push(Placeholder('for_in_done', [enum]))

            case 'for_of_next':
                pos = 3 + inst.imm
                iterator = self.peek(pos) if pos <= len(self.stack) else self.peek(3)
                self.push(Placeholder('for_of_value', [iterator]))
                self.push(Placeholder('for_of_done', [iterator]))

            case 'iterator_get_value_done':
                result = self.pop()
                self.push(MemberAccess.named(result, 'value'))
                self.push(MemberAccess.named(result, 'done'))

            case 'iterator_close':
                self.pop_n(3)

            case 'iterator_next':
                value = self.pop()
                self.push(Placeholder('iterator_next', [value]))

            case 'iterator_call':
                value = self.pop()
                self.push(Placeholder('iterator_call', [value]))
                self.push(Placeholder('iterator_done'))

            case 'yield' | 'yield_star' | 'async_yield_star':
                op = 'yield' if name == 'yield' else 'yield*'
                self.push(UnaryOp(op, self.pop()))
                self.push(Placeholder('resume_kind'))

            case 'add_brand':
                self.pop_n(2)

            # control flow
            case 'if_false' | 'if_true':
                self.terminate(TerminatorKind.BRANCH, self.pop())

            case 'goto':
                self.terminate(TerminatorKind.JUMP)

            case 'return' | 'return_async':
                self.terminate(TerminatorKind.RETURN, self.pop())

            case 'return_undef':
                self.terminate(TerminatorKind.RETURN)

            case 'throw':
                self.terminate(TerminatorKind.THROW, self.pop())

            case 'throw_error':
                error_class, template = THROW_ERRORS.get(inst.imm, ('Error', '{}'))
                message = template.format(self.atom_name(inst)) if '{}' in template else template
                self.terminate(TerminatorKind.THROW, New(Identifier(error_class), [Literal.string(message)]))

            case 'catch':
                self.push(CatchMarker(inst.target))
                self.terminate(TerminatorKind.CATCH)

            case 'gosub':
                self.terminate(TerminatorKind.GOSUB)

            case 'ret':
                self.pop()
                self.terminate(TerminatorKind.RET)

            case 'with_get_var' | 'with_put_var' | 'with_delete_var' | 'with_make_ref' \
                    | 'with_get_ref' | 'with_get_ref_undef':
                self.lift_with(inst, name)

            case _:
                self.lift_generic(inst)

    def special_object(self, kind: int) -> Expression:
        match kind:
            case 0 | 1:
                return Identifier('arguments')

            case 3:
                return MemberAccess.named(Identifier('new'), 'target')

            case 6:
                return MemberAccess.named(Identifier('import'), 'meta')

            case _:
                names = {2: 'this_func', 4: 'home_object', 5: 'var_object'}
                return Placeholder(names.get(kind, f'special_object_{kind}'))

    def lift_with(self, inst: Instruction, name: str):
        '''with_* jumps to its label when the binding exists on the with object'''
        obj = self.pop()
        prop = self.atom_name(inst)
        member = MemberAccess.named(obj, prop)
        base = list(self.stack)

        match name:
            case 'with_get_var':
                taken = base + [member]

            case 'with_put_var':
                # the stored value is consumed on the taken edge
                taken = base[:-1]

            case 'with_delete_var':
                taken = base + [UnaryOp('delete', member)]

            case 'with_make_ref':
                taken = base + [obj, Literal.string(prop)]

            case _:
                taken = base + [obj, member]

        self.current.edge_stacks[BranchKind.TRUE] = taken
        self.terminate(TerminatorKind.BRANCH, BinaryOp('in', Literal.string(prop), obj))

    def lift_generic(self, inst: Instruction):
        '''Unmodeled opcode: apply its stack effect and push placeholders'''
        n_pop, n_push = stack_effect(inst)
        inputs = self.pop_n(n_pop)
        name = inst.mnemonic

        if n_push == 0:
            self.emit(ExpressionStatement(Placeholder(name, inputs)))
            return

        for i in range(n_push):
            self.push(Placeholder(name if i == 0 else f'{name}_{i}', inputs if i == 0 else []))

    def _declare_remaining_globals(self, blocks: list[LiftedBlock]):
        '''define_var without a matching put_var_init: declare at the top'''
        if not self.global_decls or not blocks:
            return

        decls = [VariableDeclaration('let' if kind == 'const' else kind, Identifier(name))
                 for name, kind in self.global_decls.items()]
        entry = blocks[0]
        entry.statements[:0] = decls
        entry.inherited_drops = [(i + len(decls), v) for i, v in entry.inherited_drops]
        entry.clobbers = [(e, i + len(decls), c) for e, i, c in entry.clobbers]
        self.global_decls = {}


def lift_function(module: Module, decoded: DecodedFunction, cfg: ControlFlowGraph,
                  scope: Scope | None = None) -> LiftedFunction:
    lifted = Lifter(module, decoded, cfg, scope).lift()
    logger.debug('lifted %s: %d blocks', decoded.function.display_name() or '<anonymous>', len(lifted.blocks))
    return lifted
