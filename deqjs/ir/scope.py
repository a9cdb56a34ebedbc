'''Per-function bindings: slot (kind + index) to identifier name'''

from dataclasses import dataclass

from ..common import *
from ..quickjs.container import FunctionInfo, VarDef, VarDefFlags
from .js_ir import BindingKind, Identifier, Slot

# Names the compiler gives to hidden locals; kept readable rather than sanitized
SPECIAL_NAMES = {
    'this'                  : 'this',
    'arguments'             : 'arguments',
    'new.target'            : 'new_target',
    '<ret>'                 : '_ret',
    '<this_active_func>'    : '_this_func',
    '<home_object>'         : '_home_object',
    '<class_fields_init>'   : '_fields_init',
    '<brand>'               : '_brand',
}

# Names that refer to the language binding itself and are never declared
IMPLICIT_NAMES = ('this', 'arguments')


@dataclass
class Binding:
    kind        : BindingKind
    index       : int
    name        : str
    var_def     : VarDef | None = None
    captured    : bool          = False

    @property
    def slot(self) -> Slot:
        return Slot(self.kind, self.index)

    @property
    def is_const(self) -> bool:
        return self.var_def is not None and self.var_def.is_const

    @property
    def is_lexical(self) -> bool:
        return self.var_def is not None and self.var_def.is_lexical

    @property
    def is_implicit(self) -> bool:
        return self.name in IMPLICIT_NAMES

    @property
    def slot_name(self) -> str:
        return str(self.slot)


class Scope:
    '''Bindings of one function

    Names are sanitized and de-duplicated once when the scope is built. Passes
    may rename a binding; identifiers keep pointing at it through their slot.
    '''

    def __init__(self):
        self.bindings: dict[Slot, Binding] = {}
        self._names: set[str] = set()
        self._temps = 0

    @classmethod
    def from_function(cls, func: FunctionInfo) -> 'Scope':
        scope = cls()

        for i in range(max(func.arg_count, func.defined_arg_count)):
            var_def = func.arg_def(i)
            scope.add(BindingKind.ARG, i, _atom_name(var_def), f'arg{i}', var_def)

        for i in range(func.var_count):
            var_def = func.local_def(i)
            binding = scope.add(BindingKind.LOC, i, _atom_name(var_def), f'loc{i}', var_def)
            binding.captured = var_def is not None and bool(var_def.flags & VarDefFlags.CAPTURED)

        for i, cv in enumerate(func.closure_vars):
            scope.add(BindingKind.VAR_REF, i, cv.name.name, f'var_ref{i}')

        for i in range(len(func.closure_vars), func.var_ref_count):
            scope.add(BindingKind.VAR_REF, i, None, f'var_ref{i}')

        return scope

    def add(self, kind: BindingKind, index: int, raw_name: str | None, fallback: str,
            var_def: VarDef | None = None) -> Binding:
        name = self._unique(self._clean(raw_name, fallback))
        binding = Binding(kind, index, name, var_def)
        self.bindings[binding.slot] = binding
        return binding

    def _clean(self, raw_name: str | None, fallback: str) -> str:
        if not raw_name:
            return fallback

        if raw_name in SPECIAL_NAMES:
            return SPECIAL_NAMES[raw_name]

        name = sanitize_ident(raw_name)
        return fallback if name.strip('_') == '' else name

    def _unique(self, name: str) -> str:
        if name in IMPLICIT_NAMES and name not in self._names:
            self._names.add(name)
            return name

        candidate = name
        n = 1
        while candidate in self._names:
            candidate = f'{name}_{n}'
            n += 1

        self._names.add(candidate)
        return candidate

    def binding(self, kind: BindingKind, index: int) -> Binding:
        slot = Slot(kind, index)
        binding = self.bindings.get(slot)
        if binding is None:
            # slot beyond the declared counts: validation is off or a corrupt file
            binding = self.add(kind, index, None, f'{kind.slot_prefix}{index}')
        return binding

    def ident(self, kind: BindingKind, index: int) -> Identifier:
        binding = self.binding(kind, index)
        return Identifier(binding.name, binding.slot)

    def new_temp(self) -> Identifier:
        '''Synthesized stack temporary ($s0, $s1, ...)'''
        index = self._temps
        self._temps += 1
        binding = Binding(BindingKind.TEMP, index, self._unique(f'$s{index}'))
        self.bindings[binding.slot] = binding
        return Identifier(binding.name, binding.slot)

    def name_of(self, slot: Slot) -> str:
        binding = self.bindings.get(slot)
        return binding.name if binding is not None else str(slot)

    def rename(self, slot: Slot, new_name: str) -> str:
        binding = self.bindings[slot]
        self._names.discard(binding.name)
        binding.name = self._unique(sanitize_ident(new_name))
        return binding.name

    def params(self, func: FunctionInfo) -> list[Identifier]:
        return [self.ident(BindingKind.ARG, i) for i in range(func.arg_count)]

    def locals(self) -> list[Binding]:
        return [b for b in self.bindings.values() if b.kind in (BindingKind.LOC, BindingKind.TEMP)]

    def __iter__(self):
        return iter(self.bindings.values())

    def __len__(self) -> int:
        return len(self.bindings)


def _atom_name(var_def: VarDef | None) -> str | None:
    if var_def is None or var_def.name.is_null:
        return None
    return var_def.name.name
