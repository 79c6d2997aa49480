from setuptools import find_packages, setup

setup(
    name="ci-bridge",
    version="0.1.0",
    packages=find_packages(
        include=[
            "ci_common",
            "ci_common.*",
            "ci_drivers",
            "ci_drivers.*",
            "ci_runner",
            "ci_runner.*",
            "ci_cli",
            "ci_cli.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "click>=8.1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ci-bridge=ci_cli.cli:cli",
            "ci-runner=ci_runner.__main__:main",
        ],
    },
    python_requires=">=3.11.4",
)
