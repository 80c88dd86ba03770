from telemetry_bridge.bridge import main

main()
