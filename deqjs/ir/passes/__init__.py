'''Rewrite passes over the structured IR'''

from .folding import *
from .deobfuscation import *
from .optimization import *

__all__ = [
    # Folding
    'ConstantFolder',
    'fold_constants',
    'known_truthiness',

    # Deobfuscation
    'OpaquePredicatePass',
    'JunkCodePass',
    'StringArrayPass',
    'FlatteningPass',
    'ProxyInliningPass',
    'ClosureNamingPass',
    'DEOBFUSCATION_PASSES',
    'build_deobfuscation_pipeline',

    # Optimization
    'ConstantFoldingPass',
    'TempInliningPass',
    'DeadStorePass',
    'TrailingReturnPass',
    'LabelCleanupPass',
    'OPTIMIZATION_PASSES',
    'build_optimization_pipeline',
]
