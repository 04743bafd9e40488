"""
MCP (Model Context Protocol) core

- catalog: immutable capability catalog and its one-shot builder
- entity_tools / resources / tools / prompts / describe_model: descriptor builders
- query / filters / uri_template: argument and URI translation into query plans
- server / session_manager: per-session protocol handling and the session registry
"""
