"""HTTP and MCP surfaces over govsync."""
