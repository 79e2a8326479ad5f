# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""Memoria – hybrid lexical + semantic search over notes and past chats."""

__version__ = "0.1.0"
