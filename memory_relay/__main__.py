from memory_relay.application.api.api_server import main

main()
