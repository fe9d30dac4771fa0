"""Build peerchat package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="peerchat",
    version="0.1.0",
    description="Peer-to-peer text chat with a relay-assisted handshake",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests*", "testing*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiortc>=1.5.0",
        "click",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "websockets>=13.0",
    ],
    extras_require={
        "dev": [
            "coverage",
            "pytest",
            "pytest-asyncio>=0.23.0",
            "uvloop ; platform_system!='Windows'",
        ],
    },
    entry_points={
        "console_scripts": [
            "peerchat=peerchat.cli:cli",
        ],
    },
)
