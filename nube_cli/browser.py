"""Browser launcher used by the authorization flow"""

import webbrowser

from loguru import logger


def open_browser(url: str) -> bool:
    """Open url in the user's browser. Returns False if no browser could be launched."""
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as e:
        logger.debug(f"Browser launch failed: {e}")
        return False
    return bool(opened)
