'''
Decompiler driver

    parse -> decode -> CFG -> lift -> structure -> (deobfuscate) -> (optimize) -> declare -> emit

Container errors abort the run. Anything that goes wrong inside one function
only turns that function into its raw listing.
'''

from dataclasses import dataclass, field

from .common import *
from .quickjs import *
from .ir import *
from .codegen import create_emitter

logger = logging.getLogger(__name__)

DISASM_MODE = 'disasm'


@dataclass
class DecompileOptions:
    mode        : str           = 'pseudo'
    version     : str           = 'auto'
    deobfuscate : bool          = False
    optimize    : bool          = False
    indent      : str | None    = None

    @classmethod
    def from_config(cls, config: Config | None = None) -> 'DecompileOptions':
        config = config or get_config()
        return cls(
            mode        = config.mode,
            version     = config.version,
            deobfuscate = config.deobfuscate,
            optimize    = config.optimize,
            indent      = config.indent,
        )


@dataclass
class DecompiledFunction:
    index       : int
    name        : str
    text        : str
    body        : Block | None              = None
    scope       : Scope | None              = None
    warnings    : list[DecompileWarning]    = field(default_factory = list)
    fallback    : bool                      = False


@dataclass
class DecompileResult:
    module      : Module
    functions   : list[DecompiledFunction]
    text        : str

    @property
    def warnings(self) -> list[DecompileWarning]:
        return [w for fn in self.functions for w in fn.warnings]


class Decompiler:

    def __init__(self, options: DecompileOptions | None = None):
        self.options = options or DecompileOptions.from_config()
        self.emitter = create_emitter(self.options.mode, self.options.indent, self.options.optimize)

    @property
    def disasm(self) -> bool:
        return self.options.mode == DISASM_MODE

    def decompile(self, data: bytes) -> DecompileResult:
        module = parse_module(data, self.options.version)
        logger.debug('parsed %s module: %d functions, %d atoms',
                      module.version.name.lower(), len(module.functions), len(module.atoms))

        program = ProgramIR(module, [self.build_function(module, func) for func in module.functions])
        self.rewrite(program)

        functions = []
        for fn in program.functions:
            if fn.scope is not None and not fn.fallback and not self.disasm:
                fn.body = declare_locals(fn.body, fn.scope)

            functions.append(DecompiledFunction(
                index       = fn.index,
                name        = fn.name,
                text        = self.emitter.emit_function(fn),
                body        = None if fn.fallback or self.disasm else fn.body,
                scope       = fn.scope,
                warnings    = fn.warnings,
                fallback    = fn.fallback,
            ))

        text = '\n'.join(f.text for f in functions if f.text.strip())
        return DecompileResult(module, functions, text)

    def rewrite(self, program: ProgramIR):
        if self.disasm:
            if self.options.deobfuscate:
                ClosureNamingPass().run(program)
            return

        if self.options.deobfuscate:
            pipeline = build_deobfuscation_pipeline()
            pipeline.run(program, debug = logger.isEnabledFor(logging.DEBUG))
            logger.debug('deobfuscation: %d rounds', pipeline.iterations)

        if self.options.optimize:
            pipeline = build_optimization_pipeline()
            pipeline.run(program, debug = logger.isEnabledFor(logging.DEBUG))
            logger.debug('optimization: %d rounds', pipeline.iterations)

    def build_function(self, module: Module, func: FunctionInfo) -> FunctionIR:
        name = func.display_name()
        decoder = Decoder(instruction_table_for(module.version), module)
        decoded = decoder.decode(func)
        listing = raw_listing(decoded.instructions, module.atoms)

        fn = FunctionIR(func, None, name, listing = listing, warnings = decoded.warnings)
        if self.disasm:
            return fn

        try:
            decoder.validate(decoded)
            cfg = build_cfg(decoded)
            scope = Scope.from_function(func)
            lifted = lift_function(module, decoded, cfg, scope)
            fn.body = structure_function(lifted, module.atoms)
            fn.scope = scope
            fn.params = scope.params(func)

        except DecompileError as e:
            logger.debug('%s: %s, falling back to raw listing', name or f'function {func.index}', e)
            fn.fallback = True
            fn.error = str(e)
            fn.warnings.append(warning_from_error(e))

        for w in fn.warnings:
            w.function = w.function or name

        return fn


def decompile(data: bytes, options: DecompileOptions | None = None) -> DecompileResult:
    '''Decompile a .jsc buffer'''
    return Decompiler(options).decompile(data)
