"""Statistical analysis and data generation modules."""

from . import data_generation as data_generation
from . import design as design
from . import distributions as distributions
from . import emmeans as emmeans
from . import mixed_models as mixed_models
from . import ols as ols
from . import r_squared as r_squared
