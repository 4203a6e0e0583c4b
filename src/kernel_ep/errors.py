class NotReadyError(RuntimeError):
    """Raised when a regressor is asked to predict before its batch bootstrap."""


class ComputationError(ArithmeticError):
    """Raised when a numeric value cannot be repaired into a finite one."""
