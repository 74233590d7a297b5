from praxio.mcp_server import main

main()
