"""Block document to Markdown conversion worker."""
