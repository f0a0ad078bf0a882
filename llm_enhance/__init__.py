"""
LLM Enhance - provider-agnostic AI post-processing for transcribed text.

Sends dictated text through OpenAI-compatible APIs, Anthropic or AWS Bedrock
using one calling convention, handling each provider's authentication,
request shape and failure behavior.
"""

__version__ = "0.1.0"
__author__ = "Brian Weaver"
__description__ = "Provider-agnostic AI enhancement for transcribed text"
