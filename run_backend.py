import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

if __name__ == "__main__":
    import uvicorn
    # Session memory is per process, so a single worker keeps "export it" consistent
    uvicorn.run(
        "tabular_query.api.main:app",
        host=os.getenv("TQ_HOST", "0.0.0.0"),
        port=int(os.getenv("TQ_PORT", "5000")),
        reload=False,
        workers=1,
    )
