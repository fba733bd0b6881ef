"""
LocalAI mailresponder

A local-first mail agent that reads incoming email from IMAP, Microsoft
Graph or Gmail accounts, drafts replies with a local LLM (Ollama) and
sends them back through the originating account.
"""

__version__ = "1.0.0"
__author__ = "Ronald van der Meer"
__app_name__ = "LocalAI mailresponder"
