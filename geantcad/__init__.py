# geantcad/__init__.py
"""Geometry authoring core: scene graph, undoable edits, GDML/mesh export and Geant4 project generation."""

__version__ = "0.1.0"
