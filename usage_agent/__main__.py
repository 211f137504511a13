from usage_agent.agent import main

main()
