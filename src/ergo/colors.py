"""
Colors Utility Module

Terminal color support for the CLI, with automatic detection of terminal
capabilities. The core never imports this.
"""

import os
import sys


def _supports_color() -> bool:
    """Check if the terminal supports ANSI color codes."""
    # FORCE_COLOR overrides all detection
    if 'FORCE_COLOR' in os.environ:
        return True

    # NO_COLOR convention
    if 'NO_COLOR' in os.environ:
        return False

    if not hasattr(sys.stdout, 'isatty') or not sys.stdout.isatty():
        return False

    if os.environ.get('TERM', '') == 'dumb':
        return False

    return True


class Colors:
    """
    ANSI color codes - automatically disabled on unsupported terminals.

    Usage:
        from ergo.colors import Colors
        print(f"{Colors.GREEN}done{Colors.RESET}")
    """
    _enabled = _supports_color()

    RESET = "\033[0m" if _enabled else ""

    BOLD = "\033[1m" if _enabled else ""
    DIM = "\033[2m" if _enabled else ""

    RED = "\033[31m" if _enabled else ""
    GREEN = "\033[32m" if _enabled else ""
    YELLOW = "\033[33m" if _enabled else ""
    BLUE = "\033[34m" if _enabled else ""
    MAGENTA = "\033[35m" if _enabled else ""
    CYAN = "\033[36m" if _enabled else ""

    BRIGHT_RED = "\033[91m" if _enabled else ""

    STATE_ICONS = {
        'todo': '○',
        'doing': '◐',
        'done': '●',
        'blocked': '⊘',
        'canceled': '✕',
        'error': '!',
    }
    EPIC_ICON = '◆'

    @classmethod
    def is_enabled(cls) -> bool:
        """Check if color output is enabled."""
        return cls._enabled

    @classmethod
    def state_color(cls, state: str) -> str:
        """Get color for a task state."""
        colors = {
            'todo': cls.CYAN,
            'doing': cls.YELLOW,
            'done': cls.GREEN,
            'blocked': cls.RED,
            'canceled': cls.DIM,
            'error': cls.BRIGHT_RED,
        }
        return colors.get(state, cls.RESET)

    @classmethod
    def format_state(cls, state: str) -> str:
        """Format a state with color."""
        return f"{cls.state_color(state)}{state}{cls.RESET}"

    @classmethod
    def state_icon(cls, state: str) -> str:
        icon = cls.STATE_ICONS.get(state, '?')
        return f"{cls.state_color(state)}{icon}{cls.RESET}"


def state_str(state: str) -> str:
    """Format state with color (shorthand)."""
    return Colors.format_state(state)


def colorize(text: str, color: str) -> str:
    """Apply a color to text if colors are enabled."""
    if Colors._enabled:
        return f"{color}{text}{Colors.RESET}"
    return text
