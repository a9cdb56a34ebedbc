'''JS IR: lifting, control flow recovery and rewrite passes'''

from .js_ir import *
from .visitor import *
from .scope import *
from .lifted import *
from .lifter import lift_function
from .structurer import structure_function
from .declarations import declare_locals
from .program import *
from .pipeline import *
from .passes import *
