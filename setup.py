from setuptools import setup, find_packages

setup(
    name="gcli-gateway",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "fastapi",
        "uvicorn",
        "httpx",
        "pydantic>=2",
        "pyyaml",
        "python-dotenv",
        "structlog",
        "tiktoken",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "pytest-httpx",
        ],
    },
    entry_points={
        "console_scripts": [
            "gcli-gateway=gcli_gateway.main:main",
        ],
    },
    description="OpenAI-compatible gateway for the Gemini Code Assist API with a rotating credential pool.",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
