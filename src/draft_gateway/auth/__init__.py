"""Authentication, identity and workspace roles."""
