'''Output mode registry'''

from typing import Callable

from ..common import *
from ..ir.program import FunctionIR


class Emitter:
    '''Renders one function; the decompiler joins the results'''

    def __init__(self, indent: str | None = None, optimize: bool = False):
        self.indent = default_indent() if indent is None else indent
        self.optimize = optimize

    def emit_function(self, fn: FunctionIR) -> str:
        raise NotImplementedError(f'{self.__class__.__name__}.emit_function() not implemented')


EmitterFactory = Callable[..., Emitter]

_modes: dict[str, EmitterFactory] = {}


def register_mode(name: str, factory: EmitterFactory):
    '''Make `factory(indent = ..., optimize = ...)` available as output mode `name`'''
    _modes[name] = factory


def available_modes() -> list[str]:
    return sorted(_modes)


def create_emitter(name: str, indent: str | None = None, optimize: bool = False) -> Emitter:
    factory = _modes.get(name)
    if factory is None:
        raise ValueError(f'unknown output mode {name!r} (available: {", ".join(available_modes())})')
    return factory(indent = indent, optimize = optimize)
