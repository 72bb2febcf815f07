"""Find the widest dependency version requirements under which a Cargo project still builds and passes its tests."""

__version__ = "0.1.3"
__all__ = ["__version__"]