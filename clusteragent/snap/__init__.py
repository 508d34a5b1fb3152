"""Access to the files, services, commands and tokens of the snap."""