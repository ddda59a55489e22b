from autofwd.cli import main

main()
