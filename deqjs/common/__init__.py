'''Shared infrastructure: configuration, enums, errors and formatting helpers'''

from .config import *
from .enum import *
from .errors import *
from .utils import *
