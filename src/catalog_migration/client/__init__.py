"""HTTP clients for the legacy catalog API and the destination GraphQL API."""
