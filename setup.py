from setuptools import setup, find_packages

setup(
    name="appspawner",
    version="0.1.0",
    description="appspawner - worker process spawner with preload-and-fork acceleration",
    author="AdaOS Team",
    package_dir={"": "src"},
    packages=find_packages("src"),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "typer>=0.16.0",
        "rich>=13.7.1",
        "SQLAlchemy>=2.0.32",
        "PyYAML>=6.0.2",
        "psutil>=5.9.8",
    ],
    extras_require={
        "test": [
            "pytest>=8.3.2",
        ],
    },
    entry_points={
        "console_scripts": [
            "appspawner=appspawner.apps.cli.app:app",
        ],
    },
)
