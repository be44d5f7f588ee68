from .web_app import main

main()
