"""
Core modules for Chat Cost Guard.

This package contains the usage ledger, budget evaluation, conversation
management and the chat session that ties them together.
"""
