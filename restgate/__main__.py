from restgate.cli.main import main

main()
