"""Send to CRM desktop capture client.

A background capture utility with:
- Hotkey-triggered region selection
- One-shot PNG upload to the CRM capture-ingest endpoint
- Token pairing against the account
- Snoozable, capture-aware auto-update restarts
"""

__version__ = "1.3.0"
__author__ = "Ben"
