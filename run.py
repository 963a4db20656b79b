# run.py
import uvicorn
import os
import sys

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcsupervisor.core.config import PORT, HOST

if __name__ == "__main__":
    print(f"===========================================================")
    print(f" MINECRAFT INSTANCE SUPERVISOR STARTING...")
    print(f" API URL: http://{HOST}:{PORT}/api/instances")
    print(f"===========================================================")

    # "mcsupervisor:create_app" refers to the create_app factory in mcsupervisor/__init__.py
    uvicorn.run(
        "mcsupervisor:create_app",
        host=HOST,
        port=PORT,
        factory=True
    )
