from setuptools import setup


with open("README.md", encoding="utf-8") as f:
    long_description = f.read()


setup(
    name="compasspy",
    version="1.0.0",
    description="Asynchronous client for the Compass school portal",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="GPLv3",
    keywords=[
        "compass",
        "compass education",
        "compasspy",
        "timetable",
        "learning tasks",
        "school",
        "education",
        "api",
    ],
    packages=["compasspy"],
    package_data={"compasspy": ["py.typed"]},
    classifiers=[
        "License :: OSI Approved :: GNU General Public License v3 (GPLv3)",
        "Natural Language :: English",
        "Topic :: Education",
        "Programming Language :: Python :: 3",
    ],
    install_requires=[
        "httpx>=0.23",
    ],
    extras_require={
        "test": ["pytest>=7", "pytest-asyncio>=0.21"],
    },
    python_requires=">=3.10",
)
