from conduit.cli.app import main

main()
