"""termagent -- a terminal-resident agent that operates a shell through tmux."""

__version__ = "0.1.0"
