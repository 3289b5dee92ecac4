from agentlink.server.app import main

main()
