"""listarchive: mirror a mailing-list mailbox into a threaded message archive."""

__version__ = "0.1.0"
