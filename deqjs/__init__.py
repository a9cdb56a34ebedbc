'''deqjs - QuickJS bytecode decompiler'''

from .common import DecompileError, DecompileWarning, FormatError, TruncatedInputError
from .quickjs import Module, parse_module
from .decompiler import DecompileOptions, DecompileResult, DecompiledFunction, Decompiler, decompile

__version__ = '0.1.0'

__all__ = [
    'decompile',
    'parse_module',
    'Decompiler',
    'DecompileOptions',
    'DecompileResult',
    'DecompiledFunction',
    'Module',
    'DecompileError',
    'DecompileWarning',
    'FormatError',
    'TruncatedInputError',
]
