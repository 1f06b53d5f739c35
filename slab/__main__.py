from slab.cli import main

main()
