'''Instruction listing per function (`disasm` mode)'''

from ..ir.program import FunctionIR
from .emitter import Emitter, register_mode


class DisassemblyEmitter(Emitter):

    def emit_function(self, fn: FunctionIR) -> str:
        info = fn.function
        name = fn.name or info.display_name()
        lines = [
            f'function {name} (args={info.arg_count}, vars={info.var_count}, strict={str(info.is_strict).lower()})',
            'bytecode:',
            *fn.listing,
        ]
        return '\n'.join(lines) + '\n'


register_mode('disasm', DisassemblyEmitter)
