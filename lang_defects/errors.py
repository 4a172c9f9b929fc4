"""
Exceptions raised when the data or a model specification breaks its contract.
"""


class DataContractError(ValueError):
    """Input data violates an invariant downstream inference relies on"""


class DegenerateLogError(ValueError):
    """A value <= 0 (or missing) was passed to a log transform"""


class ModelSpecError(ValueError):
    """A model specification does not match the table it is fitted on"""
