from setuptools import setup, find_packages

setup(
    name="attendance-backend",
    version="0.1.0",
    packages=find_packages(include=["backend", "backend.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "starlette>=0.37",
        "uvicorn>=0.30",
        "pydantic>=2.5",
        "pydantic-settings>=2.3",
        "pymongo>=4.10",
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    entry_points={
        "console_scripts": [
            "attendance-backend=backend.app.server:main",
        ],
    },
)
