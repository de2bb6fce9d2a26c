from setuptools import setup, find_packages
from standoff_mapper import __version__

setup(
    name="standoff_mapper",
    version=__version__,
    packages=find_packages(exclude=["test", "test.*"]),
    package_data={
        "standoff_mapper": ["configs/*.toml"],
    },
    python_requires=">=3.11",
    install_requires=[
        "lxml>=5.0",
        "Jinja2",
        "PyYAML",
        "argcomplete",
        "natsort",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "standoff-mapper=standoff_mapper.standoff_mapper:main",
        ],
    },
)
