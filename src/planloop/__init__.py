"""planloop: drive coding-agent CLIs through plan, review and external-review loops."""

__all__ = ["__version__"]

__version__ = "0.1.0"
