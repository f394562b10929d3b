#! /usr/bin/env python
"""pgstream, setup file.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


from setuptools import setup


setup(name="pgstream",
      version="0.2",
      author="Manlio Perillo",
      author_email="manlio.perillo@gmail.com",
      description="streaming of binary results for the PostgreSQL "
                  "protocol, version 3.0",
      license="MIT",
      url="http://developer.berlios.de/projects/pglib/",
      classifiers=[
          "Development Status :: 4 - Beta",
          "Environment :: Console",
          "Intended Audience :: Developers",
          "License :: OSI Approved :: MIT License",
          "Operating System :: OS Independent",
          "Programming Language :: Python :: 3",
          "Topic :: Database :: Front-Ends",
          ],
      packages=["pgstream"],
      python_requires=">=3.8",
      install_requires=[
          "Twisted>=21.2",
          "zope.interface",
          "scramp",
          ],
      extras_require={
          "test": ["pytest"],
          },
      )
