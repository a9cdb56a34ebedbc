from enum import IntEnum, IntFlag

class IntEnum2(IntEnum):
    def __str__(self):
        return self.name

    def __repr__(self):
        return self.__str__()

    @classmethod
    def from_name(cls, name: str):
        '''Case-insensitive lookup by member name (config/CLI values)'''
        try:
            return cls[name.upper()]
        except KeyError:
            choices = ', '.join(m.name.lower() for m in cls)
            raise ValueError(f'invalid {cls.__name__} {name!r} (expected one of: {choices})') from None

class IntFlag2(IntFlag):
    def __str__(self):
        return self.name or str(self.value)

    def __repr__(self):
        return self.__str__()
