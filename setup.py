from setuptools import setup, find_packages

setup(
    name="dissect.vhdx",
    version="1.0.0",
    description="A Dissect module implementing a read-only parser for the Hyper-V VHDX virtual disk format",
    packages=list(map(lambda v: "dissect." + v, find_packages("dissect"))),
    python_requires=">=3.9",
    install_requires=[
        "dissect.cstruct>=4.0.dev,<5.0.dev",
        "dissect.util>=3.0.dev,<4.0.dev",
    ],
    extras_require={
        "test": [
            "pytest",
        ]
    },
)
