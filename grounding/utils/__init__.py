"""Shared helpers: errors, deadlines, retry, URL/text/date handling."""
