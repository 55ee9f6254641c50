from storyreel.runner import main

main()
