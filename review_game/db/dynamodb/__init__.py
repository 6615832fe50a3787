"""DynamoDB access layer for the single Review Game table.

- boto3 client/resource configuration
- retry/backoff policy
- encrypted cursor tokens for paginated queries
- typed errors that render as problem-details responses
- conditional and transactional write helpers
"""
