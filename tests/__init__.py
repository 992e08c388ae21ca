"""
Retrieval Core Test Suite

Test Structure:
- test_text_chunker.py: Cleaning, title prefixing and chunk boundaries
- test_embedding_client.py: Provider retries, batching and vector helpers
- test_query_processor.py: Language detection, semantic mapping and fan-out
- test_vector_search.py / test_keyword_search.py: The two search engines
- test_hybrid_ranker.py: Branch isolation, pooling and diversification
- test_citations.py: Citation numbering and inline attribution checks
- test_retrieval_service.py: End-to-end retrieve() over the in-memory store
- test_document_manager.py: Ingestion, re-embedding and ordered deletion
- test_rag_config.py / test_error_handlers.py: Configuration and errors
- test_cli.py: Developer CLI commands
- conftest.py: Test configuration and fixtures

Usage:
    # Run all tests
    pytest

    # Run specific test types
    pytest -m unit
    pytest -m integration
"""
