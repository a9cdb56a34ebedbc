'''Code Generators'''

from .emitter import *
from .javascript import *
from .disasm import *

__all__ = [
    'Emitter',
    'register_mode',
    'available_modes',
    'create_emitter',
    'JavaScriptEmitter',
    'LiteralJavaScriptEmitter',
    'DisassemblyEmitter',
    'generate_javascript',
]
