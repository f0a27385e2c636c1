from setuptools import find_packages, setup

setup(
    name="mysterium-proxy-core",
    version="0.1.0",
    packages=find_packages(
        include=[
            "proxy_common",
            "proxy_common.*",
            "proxy_controller",
            "proxy_controller.*",
            "proxy_aggregate",
            "proxy_aggregate.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "redis>=5.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
        ],
    },
    python_requires=">=3.11",
)
