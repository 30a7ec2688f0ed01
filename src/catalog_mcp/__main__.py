"""
Entry point for running catalog_mcp as a module.

Allows running the Catalog MCP Server via:
    python -m catalog_mcp
    uv run python -m catalog_mcp
"""

from catalog_mcp.supervisor import main

if __name__ == "__main__":
    main()
