"""
Chat — glue between retrieval results and the chat-completion model.

Conversation persistence and PII screening live outside this package.
"""
