from pharmaledger import create_app

app = create_app()
