"""Provider adapters: folder mapping, IMAP sessions and message parsing."""
