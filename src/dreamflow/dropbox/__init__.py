"""Dropbox integration: OAuth credentials, API client, and change sync."""
