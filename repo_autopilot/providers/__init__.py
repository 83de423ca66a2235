"""Provider implementations for the code-hosting and AI collaborators.

Key Components:
    - GitProvider: Abstract base for code-hosting providers
    - AgentProvider: Abstract base for AI agent providers
    - GitHubRestProvider: GitHub implementation on PyGithub
    - OpenAICompatibleProvider: OpenAI-compatible chat completions client
"""
