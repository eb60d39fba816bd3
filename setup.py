from setuptools import setup, find_packages


setup(
    name="bar-archive",
    version="0.1",
    packages=find_packages(include=["bar", "bar.*"]),
    description="A compact archive format with a trailing self-describing header, per-file compression and encryption.",
    author="vercingetorx",
    python_requires=">=3.9",
    install_requires=[
        "msgpack>=1.0.0",
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
    ],
    entry_points={
        "console_scripts": [
            "bar=bar.cli:main",
        ]
    },
)
