"""Multi-tenant storefront chatbot answering Messenger and Telegram through a RAG pipeline."""

__version__ = "0.1.0"
