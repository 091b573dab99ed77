from setuptools import setup, find_namespace_packages

setup(
    name="abuseguard",
    version="0.1.0",
    packages=find_namespace_packages(include=["abuseguard", "abuseguard.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "starlette>=0.36",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "httpx>=0.27",
        "redis>=5.0",
    ],
    extras_require={
        "server": ["uvicorn[standard]>=0.27"],
        "test": ["pytest>=8.0", "pytest-asyncio>=1.0"],
    },
)
