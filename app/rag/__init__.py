"""
Chat orchestration: prompt assembly, token budgeting, citations and the model client.
"""
from .generation import build_prompt

__all__ = ['build_prompt']
