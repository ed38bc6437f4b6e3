"""
*wellmodel*

Standard well model of a black-oil reservoir simulator: well equations,
Schur complement coupling, group control and economic limits.
"""

from .errors import *  # noqa
from .types import *  # noqa
from .constants import *  # noqa
from .config import *  # noqa
from .autodiff import *  # noqa
from .controls import *  # noqa
from .vfp import *  # noqa
from .economics import *  # noqa
from .wells import *  # noqa
from .state import *  # noqa
from .reservoir import *  # noqa
from .geometry import *  # noqa
from .groups import *  # noqa
from .well import *  # noqa
from .model import *  # noqa
from .linalg import *  # noqa
