'''QuickJS bytecode container, opcode tables, decoder and CFG'''

from .reader import BinaryReader
from .atoms import *
from .values import *
from .container import *
from .optable import OpFormat, OpcodeInfo, OpcodeTable, CURRENT_OPCODES, UNKNOWN_OPCODE
from .optable_v1 import LEGACY_OPCODES
from .instruction import *
from .basic_block import *
from .instruction_table import *
from .decoder import *
from .cfg import *
from .listing import *
