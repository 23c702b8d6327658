from setuptools import setup

version = '0.1'

with open("README.md", "r", encoding="utf-8") as f:
    long_descr = f.read()

setup(
    name='pypioneeravr',
    packages=['pypioneeravr'],
    version=version,
    license='Apache 2.0',
    description='Control Pioneer AV receivers over the network',
    long_description=long_descr,
    long_description_content_type='text/markdown',
    author='johnno',
    author_email='johnno@example.com',
    url='https://github.com/johnno/pypioneeravr',
    download_url=f'https://github.com/johnno/pypioneeravr/archive/{version}.tar.gz',
    keywords=['Pioneer', 'AVR', 'receiver', 'telnet'],
    install_requires=[
        "aiohttp>=3.8.3",
        "zeroconf>=0.132.0"
    ],
    extras_require={
        'test': [
            "pytest>=7.0",
            "pytest-asyncio>=0.21"
        ]
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Topic :: Home Automation',
        'License :: OSI Approved :: Apache Software License',
        'Programming Language :: Python :: 3.10'
    ],
)
