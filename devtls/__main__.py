from devtls.scripts.tool import main

main()
