"""Mailchimp Marketing API: client, member writes and merge-field schemas."""
