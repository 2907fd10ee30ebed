"""Protocol tables and result shapes shared by the stdio and HTTP adapters.

Keep this package import light: it must not pull in the transport stack.
"""

from __future__ import annotations
