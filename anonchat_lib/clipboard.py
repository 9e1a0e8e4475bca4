"""
Cross-platform clipboard utility.
"""
import pyperclip


def copy_to_clipboard(text: str) -> bool:
    """
    Copies the given text to the system clipboard.
    Returns False when no clipboard mechanism is available (e.g. headless).
    """
    try:
        pyperclip.copy(text)
        return True
    except pyperclip.PyperclipException:
        return False
