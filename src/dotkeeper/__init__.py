"""dotkeeper: track, diff and safely apply dotfiles."""

__version__ = "0.1.0"
