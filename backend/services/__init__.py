"""
Parley Services - Shared infrastructure services.

- llm_client: LLM gateway (completion with retry, streaming, model allow-list)
- retry: Transient/Fatal error classification and backoff driver
- chat_store: Durable conversation store contract + in-memory implementation
- database: asyncpg pool manager + PostgreSQL conversation store
- ephemeral_chats: In-memory anonymous chat registry with expiry sweep
- mcp_client: MCP tool provider
- auth: Bearer token gate resolving caller identity
"""

from .retry import ErrorClassifier, Transient, Fatal, retry_async, backoff_delay

__all__ = ["ErrorClassifier", "Transient", "Fatal", "retry_async", "backoff_delay"]
