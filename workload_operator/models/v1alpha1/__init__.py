from .conditions import *
from .workload import *
from .workload_definition import *
