from backend.app.server import main

main()
