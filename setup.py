from setuptools import setup, find_packages


setup(
    name="lusl",
    version="0.1",
    packages=find_packages(include=["lusl", "lusl.*"]),
    description="Lossless serializer that packs a directory tree into one optionally encrypted and compressed archive.",
    author="lusl developers",
    python_requires=">=3.9",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
    ],
    entry_points={
        "console_scripts": [
            "lusl=lusl.cli:main",
        ]
    },
)
