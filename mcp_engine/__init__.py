"""MCP engine: JSON-RPC сервер протокола MCP с транспортами stdio и HTTP+SSE."""
