"""Domain exceptions raised by the operation modules.

Handlers do not catch these one by one: ``main.py`` maps ``NotFoundError`` to
404 and ``RuleError`` to 400. Any other exception, including a stray
``ValueError`` from a library, is a 500.
"""


class NotFoundError(LookupError):
    """A row does not exist, or is not visible to the caller."""


class RuleError(ValueError):
    """A request is well-formed but breaks a business rule."""


class UnavailableError(RuleError):
    """A product cannot be sold in the requested quantity."""
