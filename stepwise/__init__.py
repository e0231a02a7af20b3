"""Run tool-calling chats and declarative flows with policy-checked, retried shell commands."""
