from index_mirror.main import main

main()
