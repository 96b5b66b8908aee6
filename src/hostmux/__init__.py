"""hostmux: route local apps by Host header through one shared entrypoint."""

__version__ = '0.1.0'
