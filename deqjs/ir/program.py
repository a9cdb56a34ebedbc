'''Structured IR of a whole module, the unit the rewrite passes work on'''

from dataclasses import dataclass, field

from ..common import *
from ..quickjs import FunctionInfo, Module
from .js_ir import Block, Identifier
from .scope import Scope


@dataclass(eq = False)
class FunctionIR:
    '''One function after structuring

    `fallback` functions failed to lift; they carry only their raw listing
    and rewrite passes leave them alone.
    '''
    function    : FunctionInfo
    scope       : Scope | None
    name        : str
    params      : list[Identifier]          = field(default_factory = list)
    body        : Block                     = field(default_factory = Block)
    warnings    : list[DecompileWarning]    = field(default_factory = list)
    fallback    : bool                      = False
    listing     : list[str]                 = field(default_factory = list)
    error       : str                       = ''

    @property
    def index(self) -> int:
        return self.function.index

    @property
    def is_anonymous(self) -> bool:
        return not self.name


@dataclass(eq = False)
class ProgramIR:
    module      : Module
    functions   : list[FunctionIR]

    @property
    def entry(self) -> FunctionIR | None:
        return self.functions[0] if self.functions else None

    def function(self, index: int) -> FunctionIR | None:
        if 0 <= index < len(self.functions):
            return self.functions[index]
        return None

    def structured(self) -> list[FunctionIR]:
        return [f for f in self.functions if not f.fallback]

    def snapshot(self) -> list[Block]:
        '''Bodies of every function, for fixed point detection'''
        return [f.body for f in self.functions]
