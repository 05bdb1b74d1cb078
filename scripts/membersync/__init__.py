"""Membership data sync: source database -> PostgreSQL and Mailchimp audiences."""
