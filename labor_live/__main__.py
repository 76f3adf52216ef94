from labor_live.live import main

main()
