# geantcad/errors.py


class GeantCADError(Exception):
    """Base class for all errors raised by the authoring core."""


class ValidationError(GeantCADError, ValueError):
    """A shape, material or config parameter violates its constraints."""


class CycleError(GeantCADError):
    """Reparenting would make a node its own ancestor."""


class LoadError(GeantCADError):
    """A project or scene could not be deserialized."""


class ExportError(GeantCADError):
    """Writing GDML or mesh output failed."""


class GenerateError(GeantCADError):
    """Generating a simulation project failed."""
