from mcp_engine.main import run

if __name__ == "__main__":
    run()
