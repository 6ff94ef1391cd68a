from setuptools import find_packages, setup

setup(
    name="nl2kindle",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"nl2kindle": ["config/*.yaml"]},
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "requests",
        "python-dotenv",
        "pyyaml",
        "colorama>=0.4.6",
        "beautifulsoup4>=4.12",
        # Web layer
        "fastapi>=0.110",
        "starlette",
        "pydantic>=2",
        "python-multipart",
        "uvicorn",
        # Persistence and storage
        "sqlalchemy>=2.0",
        "boto3",
        "botocore",
        # SNS signature verification
        "cryptography>=41",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
    entry_points={
        "console_scripts": [
            "nl2kindle=nl2kindle.cli:main",
        ],
    },
    author="GraniLuk",
    description="Convert newsletters and articles to EPUB and deliver them to Kindle",
    long_description=open("README.md", "r", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
)
