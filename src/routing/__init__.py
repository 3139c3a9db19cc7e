"""Issue routing and classification for a multi-repository organization.

This package routes inbound issue reports to the repository they belong
in, providing:
- Declarative rule matching with LLM enhancement and fallback
- LLM-based classification with strict response decoding
- A persistent duplicate ledger and destination-side duplicate search
- API usage metering and admission control
- Priority scoring with batch and deferral queues
- Destination issue creation/update, project board placement and source closing
"""
