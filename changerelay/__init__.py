"""Change-tracking replication agents for relational databases."""
